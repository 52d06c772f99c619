"""Read-only lookups of users and garages.

Garages are keyed by the owning account's user id, so a garage's identity is
the same id the presence hub addresses. Mechanics are `users` documents with
``role == "mechanic"``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from mechiee.db.mongo import Collections

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"


@dataclass
class Directory:
    database: Any

    def __post_init__(self) -> None:
        self._users = self.database.get_collection(Collections.USERS)
        self._garages = self.database.get_collection(Collections.GARAGES)

    async def display_name(self, user_id: str | None) -> str:
        """Name denormalized onto messages and ticket titles at write time."""
        if not user_id:
            return UNKNOWN_USER
        user = await self._users.find_one({"_id": user_id})
        if user and user.get("name"):
            return str(user["name"])
        garage = await self._garages.find_one({"_id": user_id})
        if garage and garage.get("garage_name"):
            return str(garage["garage_name"])
        return UNKNOWN_USER

    async def garage(self, garage_id: str) -> dict[str, Any] | None:
        return await self._garages.find_one({"_id": garage_id})

    async def garage_name(self, garage_id: str, garage: dict[str, Any] | None = None) -> str:
        """Shop name, falling back to the owner account's display name."""
        if garage is None:
            garage = await self.garage(garage_id)
        if garage and garage.get("garage_name"):
            return str(garage["garage_name"])
        return await self.display_name(garage_id)

    async def list_garages(self) -> list[dict[str, Any]]:
        return await self._garages.find({}).to_list(None)

    async def mechanic(self, mechanic_id: str) -> dict[str, Any] | None:
        return await self._users.find_one({"_id": mechanic_id, "role": "mechanic"})
