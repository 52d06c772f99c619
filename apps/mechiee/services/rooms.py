"""Room registry: maps tagged room ids onto persisted chat sessions.

Booking rooms are created lazily and idempotently. The session is found or
created with a single upsert against the unique ``booking_id`` index, so two
first-joins racing each other converge on one document. Admin-support tickets
are only ever created through `open_support_ticket`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from mechiee.core.exceptions import (
    DuplicateTicketError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mechiee.db.memory import new_id
from mechiee.db.mongo import Collections
from mechiee.schemas.booking import BookingRecord
from mechiee.schemas.chat import (
    OPEN_TICKET_STATUSES,
    Caller,
    ChatMessage,
    ChatPermissions,
    ChatSession,
    MessageType,
    Participants,
    ResolvedRoom,
    RoomId,
    RoomKind,
    RoomSummary,
    SupportStats,
    SupportStatus,
    TicketCreate,
    TicketUpdate,
    UserRole,
    room_id_for,
)
from mechiee.services.chat import count_unread
from mechiee.services.directory import Directory

logger = logging.getLogger(__name__)

TICKET_FILTER: dict[str, Any] = {"is_admin_chat": True, "booking_id": {"$exists": False}}

_PARTICIPANT_FIELD = {
    UserRole.customer: "customer_id",
    UserRole.garage: "garage_id",
    UserRole.mechanic: "mechanic_id",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def booking_participants(booking: BookingRecord) -> Participants:
    return Participants(
        customer_id=booking.customer_id,
        garage_id=booking.garage_id,
        mechanic_id=booking.mechanic_id,
    )


def booking_permissions(booking: BookingRecord) -> ChatPermissions:
    # Location sharing only makes sense once someone is coming to the bike.
    return ChatPermissions(can_send_location=booking.is_established)


@dataclass
class RoomRegistry:
    database: Any
    directory: Directory

    def __post_init__(self) -> None:
        self._sessions = self.database.get_collection(Collections.CHAT_SESSIONS)
        self._messages = self.database.get_collection(Collections.CHAT_MESSAGES)
        self._bookings = self.database.get_collection(Collections.BOOKINGS)

    # ------------- resolution -------------
    async def load_booking(self, booking_id: str) -> BookingRecord:
        doc = await self._bookings.find_one({"_id": booking_id})
        if doc is None:
            raise NotFoundError("Booking not found", details={"bookingId": booking_id})
        return BookingRecord.from_doc(doc)

    async def resolve(self, room_id: RoomId | str, caller: Caller | None = None) -> ResolvedRoom:
        """Resolve a tagged room id to its session, creating booking rooms on demand.

        With a caller, access rules are enforced as well. Without one (internal
        calls from the dispatcher) the room is resolved unconditionally.
        """
        rid = room_id if isinstance(room_id, RoomId) else RoomId.parse(room_id)

        if rid.kind == RoomKind.admin_support:
            doc = await self._sessions.find_one({"_id": rid.target_id, **TICKET_FILTER})
            if doc is None:
                raise NotFoundError("Support chat not found", details={"roomId": str(rid)})
            session = ChatSession.from_doc(doc)
            if caller is not None:
                self._check_ticket_access(session, caller)
            return ResolvedRoom(room_id=str(rid), kind=rid.kind, session=session)

        booking = await self.load_booking(rid.target_id)
        if caller is not None:
            self._check_booking_access(rid, booking, caller)
        session = await self.ensure_booking_room(booking)
        current = room_id_for(booking)
        return ResolvedRoom(room_id=str(current), kind=current.kind, session=session, booking=booking)

    async def ensure_booking_room(self, booking: BookingRecord) -> ChatSession:
        """Find-or-create the single session bound to a booking."""
        now = _now()
        seed = {
            "_id": new_id(),
            "is_admin_chat": not booking.is_established,
            "support_type": "general",
            "support_status": SupportStatus.open.value,
            "category": "booking_issue",
            "priority": "medium",
            "participants": booking_participants(booking).model_dump(),
            "permissions": booking_permissions(booking).model_dump(),
            "message_seq": 0,
            "is_active": True,
            "last_activity": now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            doc = await self._sessions.find_one_and_update(
                {"booking_id": booking.id},
                {"$setOnInsert": seed},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost a concurrent upsert; the winner's document is now visible.
            doc = await self._sessions.find_one({"booking_id": booking.id})
        if doc is None:
            raise NotFoundError("Chat session could not be created", details={"bookingId": booking.id})
        return ChatSession.from_doc(doc)

    async def resync_participants(self, room_id: RoomId | str) -> ChatSession:
        """Refresh a booking room's participant snapshot from the booking.

        Called after acceptance and whenever the booking's garage or mechanic
        changes; also flips the room out of its pre-acceptance admin state.
        """
        rid = room_id if isinstance(room_id, RoomId) else RoomId.parse(room_id)
        if not rid.is_booking_scoped:
            raise ValidationError("Only booking rooms have a participant snapshot")
        booking = await self.load_booking(rid.target_id)
        await self.ensure_booking_room(booking)
        doc = await self._sessions.find_one_and_update(
            {"booking_id": booking.id},
            {
                "$set": {
                    "participants": booking_participants(booking).model_dump(),
                    "permissions": booking_permissions(booking).model_dump(),
                    "is_admin_chat": not booking.is_established,
                    "updated_at": _now(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Re-synced participants for booking %s", booking.id)
        return ChatSession.from_doc(doc)

    # ------------- access rules -------------
    @staticmethod
    def _check_booking_access(rid: RoomId, booking: BookingRecord, caller: Caller) -> None:
        if caller.is_admin:
            return
        if rid.kind == RoomKind.support:
            if booking.is_established:
                raise PermissionDeniedError("Support chat closed after acceptance")
            if caller.role == UserRole.customer and booking.customer_id == caller.user_id:
                return
            raise PermissionDeniedError("Access denied to this chat")

        if not booking.is_established:
            raise PermissionDeniedError("Booking chat available after acceptance")
        owner = {
            UserRole.customer: booking.customer_id,
            UserRole.garage: booking.garage_id,
            UserRole.mechanic: booking.mechanic_id,
        }.get(caller.role)
        if owner is None or owner != caller.user_id:
            raise PermissionDeniedError("Access denied to this chat")

    @staticmethod
    def _check_ticket_access(session: ChatSession, caller: Caller) -> None:
        if caller.is_admin or session.created_by == caller.user_id:
            return
        raise PermissionDeniedError("Access denied to this support chat")

    # ------------- support tickets -------------
    async def open_support_ticket(self, caller: Caller, ticket: TicketCreate) -> ChatSession:
        """Open a standalone admin-support ticket for the caller.

        At most one ticket per user may be open or in progress. The pre-check
        below gives the friendly answer; the unique ``open_ticket_owner`` index
        catches the race between two concurrent opens.
        """
        field_name = _PARTICIPANT_FIELD.get(caller.role)
        if field_name is None:
            raise ValidationError("Admins cannot open support tickets")

        existing = await self._sessions.find_one({"open_ticket_owner": caller.user_id})
        if existing is not None:
            raise self._duplicate(existing)

        now = _now()
        name = await self.directory.display_name(caller.user_id)
        ticket_id = new_id()
        content = ticket.description or f"Support request created for {ticket.category.value}"
        first = ChatMessage(
            id=new_id(),
            session_id=ticket_id,
            seq=1,
            sender_id=caller.user_id,
            sender_role=caller.role.value,
            sender_name=name,
            content=content,
            message_type=MessageType.system,
            read_by=[{"user_id": caller.user_id, "read_at": now}],
            is_system_message=True,
            is_support_message=True,
            priority=ticket.priority,
            timestamp=now,
        )
        session = ChatSession(
            id=ticket_id,
            is_admin_chat=True,
            support_type=ticket.support_type,
            support_status=SupportStatus.open,
            category=ticket.category,
            priority=ticket.priority,
            created_by=caller.user_id,
            participants=Participants(**{field_name: caller.user_id}),
            title=f"{name} - {ticket.category.value.upper()} Support",
            description=ticket.description,
            message_seq=1,
            permissions=ChatPermissions(can_send_location=False),
            last_activity=now,
            created_at=now,
            updated_at=now,
        )
        doc = session.model_dump(mode="python", exclude={"id", "booking_id"})
        doc["_id"] = session.id
        doc["open_ticket_owner"] = caller.user_id
        try:
            await self._sessions.insert_one(doc)
        except DuplicateKeyError:
            existing = await self._sessions.find_one({"open_ticket_owner": caller.user_id})
            if existing is None:
                raise
            raise self._duplicate(existing) from None

        msg_doc = first.model_dump(mode="python", exclude={"id"})
        msg_doc["_id"] = first.id
        await self._messages.insert_one(msg_doc)
        logger.info("Opened support ticket %s for %s", ticket_id, caller.user_id)
        return session

    @staticmethod
    def _duplicate(existing: dict[str, Any]) -> DuplicateTicketError:
        return DuplicateTicketError(
            "You already have an active support chat",
            ticket_id=str(existing["_id"]),
            details={"supportStatus": existing.get("support_status")},
        )

    async def update_ticket_status(
        self, ticket_id: str, patch: TicketUpdate, caller: Caller
    ) -> ChatSession:
        if not caller.is_admin:
            raise PermissionDeniedError("Only admins can update support tickets")
        changes = patch.model_dump(exclude_none=True)
        if not changes:
            raise ValidationError("Nothing to update")

        current = await self._sessions.find_one({"_id": ticket_id, **TICKET_FILTER})
        if current is None:
            raise NotFoundError("Support chat not found", details={"chatId": ticket_id})

        update: dict[str, Any] = {"$set": {"updated_at": _now()}}
        for key, value in changes.items():
            update["$set"][key] = getattr(value, "value", value)
        if patch.assigned_admin:
            update["$set"]["participants.admin_id"] = patch.assigned_admin
        if patch.support_status is not None:
            if patch.support_status in OPEN_TICKET_STATUSES and current.get("created_by"):
                update["$set"]["open_ticket_owner"] = current["created_by"]
            else:
                update["$unset"] = {"open_ticket_owner": ""}

        try:
            doc = await self._sessions.find_one_and_update(
                {"_id": ticket_id}, update, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            other = await self._sessions.find_one({"open_ticket_owner": current.get("created_by")})
            if other is None:
                raise
            raise self._duplicate(other) from None
        return ChatSession.from_doc(doc)

    async def support_stats(self) -> SupportStats:
        total = await self._sessions.count_documents(TICKET_FILTER)
        breakdown: dict[str, int] = {}
        for status in SupportStatus:
            breakdown[status.value] = await self._sessions.count_documents(
                {**TICKET_FILTER, "support_status": status.value}
            )
        return SupportStats(
            total_chats=total,
            open_chats=breakdown[SupportStatus.open.value],
            in_progress_chats=breakdown[SupportStatus.in_progress.value],
            status_breakdown=breakdown,
        )

    async def my_support_chats(self, caller: Caller) -> list[ChatSession]:
        docs = (
            await self._sessions.find({"created_by": caller.user_id, **TICKET_FILTER})
            .sort([("last_activity", DESCENDING)])
            .to_list(None)
        )
        return [ChatSession.from_doc(d) for d in docs]

    # ------------- listing -------------
    async def list_rooms(self, caller: Caller) -> list[RoomSummary]:
        """Rooms visible to the caller, most recently active first."""
        if caller.is_admin:
            flt: dict[str, Any] = {"is_admin_chat": True}
        else:
            field_name = _PARTICIPANT_FIELD[caller.role]
            flt = {
                "$or": [
                    {f"participants.{field_name}": caller.user_id, "booking_id": {"$exists": True}},
                    {"created_by": caller.user_id, **TICKET_FILTER},
                ]
            }
        docs = await self._sessions.find(flt).sort([("last_activity", DESCENDING)]).to_list(None)
        sessions = [ChatSession.from_doc(d) for d in docs]

        booking_ids = [s.booking_id for s in sessions if s.booking_id]
        bookings: dict[str, BookingRecord] = {}
        if booking_ids:
            for doc in await self._bookings.find({"_id": {"$in": booking_ids}}).to_list(None):
                record = BookingRecord.from_doc(doc)
                bookings[record.id] = record

        out: list[RoomSummary] = []
        for session in sessions:
            if session.booking_id:
                booking = bookings.get(session.booking_id)
                if booking is None:
                    continue
                rid = room_id_for(booking)
                # Garages and mechanics only see a booking chat once they are attached.
                if caller.role in {UserRole.garage, UserRole.mechanic} and not booking.is_established:
                    continue
            else:
                rid = RoomId(kind=RoomKind.admin_support, target_id=session.id)
            out.append(await self.summarize(rid, session, caller.user_id))
        return out

    async def summarize(self, rid: RoomId, session: ChatSession, viewer_id: str) -> RoomSummary:
        last = await self._messages.find_one({"session_id": session.id}, sort=[("seq", DESCENDING)])
        unread = await count_unread(self._messages, session.id, viewer_id)
        is_support = session.is_admin_chat
        return RoomSummary(
            id=str(rid),
            type=rid.kind,
            chat_id=session.id,
            booking_id=session.booking_id,
            participants=session.participants,
            last_message=ChatMessage.from_doc(last) if last else None,
            unread_count=unread,
            support_status=session.support_status if is_support else None,
            priority=session.priority if is_support else None,
            category=session.category if is_support else None,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

