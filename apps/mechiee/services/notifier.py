"""Notification side-channel.

The dispatcher and chat engine depend on the `Notifier` protocol only. The
default implementation persists each notification first (so offline users see
it on their next fetch) and then pushes a live `notification` event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from mechiee.db.memory import new_id
from mechiee.db.mongo import Collections
from mechiee.schemas.notification import NotificationEvent, NotificationRecord
from mechiee.services.presence import PresenceHub

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent) -> None: ...


@dataclass
class PersistentNotifier:
    database: Any
    presence: PresenceHub

    def __post_init__(self) -> None:
        self._collection = self.database.get_collection(Collections.NOTIFICATIONS)

    async def notify(self, event: NotificationEvent) -> None:
        record = NotificationRecord(
            id=new_id(),
            user=event.user_id,
            role=event.role,
            type=event.type,
            message=event.message,
            payload=event.payload,
            created_at=datetime.now(timezone.utc),
        )
        doc = record.model_dump(mode="python", exclude={"id"})
        doc["_id"] = record.id
        doc["role"] = record.role.value if record.role else None
        await self._collection.insert_one(doc)

        live = {
            "id": record.id,
            "type": record.type,
            "message": record.message,
            "payload": record.payload,
            "timestamp": record.created_at,
            "read": False,
        }
        if event.user_id:
            delivered = await self.presence.send_to_user(event.user_id, "notification", live)
        else:
            delivered = await self.presence.send_to_role(event.role.value, "notification", live)
        logger.debug("Notification %s stored; delivered live to %d connection(s)", event.type, delivered)
