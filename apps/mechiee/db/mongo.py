"""Mongo wiring: client construction, collection names, index management."""

from __future__ import annotations

import logging
from typing import Any

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient

from mechiee.core.settings import Settings, StoreBackend

logger = logging.getLogger(__name__)


class Collections:
    BOOKINGS = "bookings"
    GARAGES = "garages"
    USERS = "users"
    CHAT_SESSIONS = "chat_sessions"
    CHAT_MESSAGES = "chat_messages"
    NOTIFICATIONS = "notifications"


def create_client(cfg: Settings) -> AsyncMongoClient:
    return AsyncMongoClient(
        cfg.mongo_uri,
        serverSelectionTimeoutMS=cfg.mongo_timeout_ms,
        tz_aware=True,
    )


def open_database(cfg: Settings) -> Any:
    """Return a database handle for the configured backend."""
    if cfg.store_backend == StoreBackend.memory:
        from mechiee.db.memory import MemoryDatabase

        logger.warning("Using in-memory store; data is lost on restart")
        return MemoryDatabase(cfg.mongo_database)
    return create_client(cfg).get_database(cfg.mongo_database)


async def ensure_indexes(database: Any, *, notification_ttl_seconds: int = 600) -> None:
    """Create the indexes the core's concurrency guarantees rely on.

    The unique indexes are load-bearing: `booking_id_unique` makes booking-room
    find-or-create idempotent and `open_ticket_owner_unique` backs the
    one-open-ticket-per-user rule.
    """
    sessions = database.get_collection(Collections.CHAT_SESSIONS)
    await sessions.create_index(
        [("booking_id", ASCENDING)], name="booking_id_unique", unique=True, sparse=True
    )
    await sessions.create_index(
        [("open_ticket_owner", ASCENDING)],
        name="open_ticket_owner_unique",
        unique=True,
        sparse=True,
    )
    for role in ("customer_id", "garage_id", "mechanic_id", "admin_id"):
        await sessions.create_index([(f"participants.{role}", ASCENDING)], name=f"participants_{role}")
    await sessions.create_index([("is_admin_chat", ASCENDING)], name="is_admin_chat")
    await sessions.create_index([("support_status", ASCENDING)], name="support_status")
    await sessions.create_index([("last_activity", DESCENDING)], name="last_activity_desc")

    messages = database.get_collection(Collections.CHAT_MESSAGES)
    await messages.create_index(
        [("session_id", ASCENDING), ("seq", ASCENDING)], name="session_seq_unique", unique=True
    )

    bookings = database.get_collection(Collections.BOOKINGS)
    await bookings.create_index([("status", ASCENDING)], name="status")
    await bookings.create_index([("customer_id", ASCENDING)], name="customer_id")
    await bookings.create_index([("garage_id", ASCENDING)], name="garage_id")
    await bookings.create_index([("mechanic_id", ASCENDING)], name="mechanic_id")

    notifications = database.get_collection(Collections.NOTIFICATIONS)
    await notifications.create_index(
        [("created_at", ASCENDING)],
        name="created_at_ttl",
        expireAfterSeconds=notification_ttl_seconds,
    )
    await notifications.create_index([("user", ASCENDING)], name="user")
