"""Central dependency providers.

The database handle, presence hub, and services are process-scoped and built
once. Tests either clear these caches or bypass them with
`app.dependency_overrides`.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Any

from mechiee.core.settings import get_settings

if TYPE_CHECKING:
    from mechiee.services.chat import ChatEngine
    from mechiee.services.directory import Directory
    from mechiee.services.dispatch import BookingDispatcher
    from mechiee.services.gateway import RoomGateway
    from mechiee.services.notifier import PersistentNotifier
    from mechiee.services.presence import PresenceHub
    from mechiee.services.rooms import RoomRegistry


@lru_cache(maxsize=1)
def get_database() -> Any:
    from mechiee.db.mongo import open_database

    return open_database(get_settings())


@lru_cache(maxsize=1)
def get_presence_hub() -> PresenceHub:
    from mechiee.services.presence import PresenceHub

    return PresenceHub()


@lru_cache(maxsize=1)
def get_directory() -> Directory:
    from mechiee.services.directory import Directory

    return Directory(database=get_database())


@lru_cache(maxsize=1)
def get_notifier() -> PersistentNotifier:
    from mechiee.services.notifier import PersistentNotifier

    return PersistentNotifier(database=get_database(), presence=get_presence_hub())


@lru_cache(maxsize=1)
def get_room_registry() -> RoomRegistry:
    from mechiee.services.rooms import RoomRegistry

    return RoomRegistry(database=get_database(), directory=get_directory())


@lru_cache(maxsize=1)
def get_chat_engine() -> ChatEngine:
    from mechiee.services.chat import ChatEngine

    return ChatEngine(
        database=get_database(),
        registry=get_room_registry(),
        directory=get_directory(),
        notifier=get_notifier(),
    )


@lru_cache(maxsize=1)
def get_dispatcher() -> BookingDispatcher:
    from mechiee.services.dispatch import BookingDispatcher

    return BookingDispatcher(
        database=get_database(),
        presence=get_presence_hub(),
        notifier=get_notifier(),
        registry=get_room_registry(),
        directory=get_directory(),
        radius_km=get_settings().dispatch_radius_km,
    )


@lru_cache(maxsize=1)
def get_gateway() -> RoomGateway:
    from mechiee.services.gateway import RoomGateway

    return RoomGateway(
        presence=get_presence_hub(),
        registry=get_room_registry(),
        chat=get_chat_engine(),
        directory=get_directory(),
        typing_quiet_interval_seconds=get_settings().typing_quiet_interval_seconds,
    )


def clear_caches() -> None:
    """Drop every cached provider (used between tests)."""
    for provider in (
        get_gateway,
        get_dispatcher,
        get_chat_engine,
        get_room_registry,
        get_notifier,
        get_directory,
        get_presence_hub,
        get_database,
    ):
        provider.cache_clear()
