from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio
from mechiee.db.memory import MemoryDatabase
from mechiee.db.mongo import Collections, ensure_indexes
from mechiee.services.chat import ChatEngine
from mechiee.services.directory import Directory
from mechiee.services.dispatch import BookingDispatcher
from mechiee.services.gateway import RoomGateway
from mechiee.services.geo import EARTH_RADIUS_KM
from mechiee.services.notifier import PersistentNotifier
from mechiee.services.presence import PresenceHub
from mechiee.services.rooms import RoomRegistry

MUMBAI = (19.0760, 72.8777)


class FakeConnection:
    """Records every frame the hub sends; `broken` simulates a dead socket."""

    def __init__(self, name: str = "conn", *, broken: bool = False) -> None:
        self.name = name
        self.broken = broken
        self.frames: list[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.frames.append(data)

    def events(self, name: str) -> list[dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == name]

    def names(self) -> list[str]:
        return [f["event"] for f in self.frames]

    def clear(self) -> None:
        self.frames.clear()

    def __repr__(self) -> str:
        return f"FakeConnection({self.name!r})"


@dataclass
class ServiceGraph:
    database: MemoryDatabase
    presence: PresenceHub
    directory: Directory
    notifier: PersistentNotifier
    registry: RoomRegistry
    chat: ChatEngine
    dispatcher: BookingDispatcher
    gateway: RoomGateway


def build_graph(database: MemoryDatabase) -> ServiceGraph:
    presence = PresenceHub()
    directory = Directory(database=database)
    notifier = PersistentNotifier(database=database, presence=presence)
    registry = RoomRegistry(database=database, directory=directory)
    chat = ChatEngine(database=database, registry=registry, directory=directory, notifier=notifier)
    dispatcher = BookingDispatcher(
        database=database,
        presence=presence,
        notifier=notifier,
        registry=registry,
        directory=directory,
        radius_km=5.0,
    )
    gateway = RoomGateway(presence=presence, registry=registry, chat=chat, directory=directory)
    return ServiceGraph(database, presence, directory, notifier, registry, chat, dispatcher, gateway)


def north_of(origin: tuple[float, float], km: float) -> tuple[float, float]:
    """A point exactly `km` great-circle kilometres due north of origin."""
    return origin[0] + math.degrees(km / EARTH_RADIUS_KM), origin[1]


class Seeder:
    def __init__(self, database: MemoryDatabase) -> None:
        self.database = database

    async def user(self, user_id: str, name: str, role: str, **extra: Any) -> dict[str, Any]:
        doc = {"_id": user_id, "name": name, "role": role, **extra}
        await self.database.get_collection(Collections.USERS).insert_one(doc)
        return doc

    async def garage(self, garage_id: str, name: str, point: tuple[float, float]) -> dict[str, Any]:
        lat, lon = point
        doc = {
            "_id": garage_id,
            "garage_name": name,
            "location": {"type": "Point", "coordinates": [lon, lat]},
        }
        await self.database.get_collection(Collections.GARAGES).insert_one(doc)
        await self.user(garage_id, f"{name} Owner", "garage")
        return doc

    async def mechanic(self, mechanic_id: str, name: str, garage_id: str | None = None) -> dict[str, Any]:
        extra = {"garage_id": garage_id} if garage_id else {}
        return await self.user(mechanic_id, name, "mechanic", **extra)

    async def booking(self, booking_id: str, customer_id: str, *, status: str = "pending", **extra: Any) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        doc = {
            "_id": booking_id,
            "customer_id": customer_id,
            "garage_id": None,
            "mechanic_id": None,
            "status": status,
            "name": "Asha",
            "mobile": "9999999999",
            "brand": "Honda",
            "model": "Activa",
            "bike_number": "MH01AB1234",
            "service_type": "general",
            "slot": "10-12",
            "address": "Bandra West",
            "lat": MUMBAI[0],
            "lon": MUMBAI[1],
            "rejected_by": [],
            "notified_garages": [],
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        await self.database.get_collection(Collections.BOOKINGS).insert_one(doc)
        return doc


def draft_for(customer_id: str, point: tuple[float, float] = MUMBAI, **overrides: Any) -> dict[str, Any]:
    payload = {
        "customer_id": customer_id,
        "name": "Asha",
        "mobile": "9999999999",
        "brand": "Honda",
        "model": "Activa",
        "bike_number": "MH01AB1234",
        "service_type": "general",
        "slot": "10-12",
        "address": "Bandra West",
        "lat": point[0],
        "lon": point[1],
        "description": "Brakes squeal",
    }
    payload.update(overrides)
    return payload


@pytest_asyncio.fixture
async def graph() -> ServiceGraph:
    database = MemoryDatabase("mechiee-test")
    await ensure_indexes(database)
    return build_graph(database)


@pytest.fixture
def seed(graph: ServiceGraph) -> Seeder:
    return Seeder(graph.database)


@pytest.fixture
def connection_factory():
    def _make(name: str = "conn", *, broken: bool = False) -> FakeConnection:
        return FakeConnection(name, broken=broken)

    return _make


@pytest.fixture
def helpers():
    """Module-level helpers for tests (tests/ is not an importable package)."""

    @dataclass(frozen=True)
    class _Helpers:
        mumbai: tuple[float, float] = MUMBAI

        @staticmethod
        def north_of(origin: tuple[float, float], km: float) -> tuple[float, float]:
            return north_of(origin, km)

        @staticmethod
        def draft(customer_id: str, point: tuple[float, float] = MUMBAI, **overrides: Any) -> dict[str, Any]:
            return draft_for(customer_id, point, **overrides)

        @staticmethod
        def build_graph(database: MemoryDatabase) -> ServiceGraph:
            return build_graph(database)

        @staticmethod
        def seeder(database: MemoryDatabase) -> Seeder:
            return Seeder(database)

    return _Helpers()
