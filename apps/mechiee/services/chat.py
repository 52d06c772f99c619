"""Chat session engine: the append-only message log and read state.

Messages are separate documents ordered by a per-session ``seq`` handed out by
an atomic ``$inc`` on the session, so concurrent senders never interleave
within one position. Persistence completes before anything is broadcast;
callers deliver the returned message through the presence hub themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from pymongo import ASCENDING, ReturnDocument

from mechiee.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from mechiee.db.memory import new_id
from mechiee.db.mongo import Collections
from mechiee.schemas.chat import (
    Caller,
    ChatMessage,
    MessageLocation,
    MessageType,
    ReadReceipt,
    ResolvedRoom,
    RoomId,
    UserRole,
)
from mechiee.schemas.notification import NotificationEvent
from mechiee.services.directory import Directory

if TYPE_CHECKING:
    from mechiee.services.notifier import Notifier
    from mechiee.services.rooms import RoomRegistry

logger = logging.getLogger(__name__)


def unread_filter(session_id: str, viewer_id: str) -> dict[str, Any]:
    """Messages sent by someone else that the viewer has no receipt for."""
    return {
        "session_id": session_id,
        "sender_id": {"$ne": viewer_id},
        "read_by.user_id": {"$ne": viewer_id},
    }


async def count_unread(messages: Any, session_id: str, viewer_id: str) -> int:
    """Unread total over the whole session log, shared by listings and log fetches."""
    return await messages.count_documents(unread_filter(session_id, viewer_id))


@dataclass
class PostedMessage:
    room: ResolvedRoom
    message: ChatMessage

    def event_payload(self) -> dict[str, Any]:
        payload = self.message.to_wire()
        payload["roomId"] = self.room.room_id
        return payload


@dataclass
class ChatLog:
    room: ResolvedRoom
    messages: list[ChatMessage]
    unread_count: int


@dataclass
class ChatEngine:
    database: Any
    registry: "RoomRegistry"
    directory: Directory
    notifier: Optional["Notifier"] = None

    def __post_init__(self) -> None:
        self._sessions = self.database.get_collection(Collections.CHAT_SESSIONS)
        self._messages = self.database.get_collection(Collections.CHAT_MESSAGES)

    async def post_message(
        self,
        room_id: RoomId | str,
        caller: Caller,
        content: str,
        message_type: MessageType = MessageType.text,
        *,
        file_url: str | None = None,
        location: MessageLocation | None = None,
    ) -> PostedMessage:
        """Append a message from the caller to a room's log.

        The sender's display name is copied onto the message at write time and
        the sender is recorded as having read it.
        """
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content is required")
        if message_type == MessageType.system:
            raise ValidationError("System messages cannot be posted directly")

        room = await self.registry.resolve(room_id, caller)
        perms = room.session.permissions
        if not perms.can_send_message:
            raise PermissionDeniedError("Sending messages is disabled in this chat")
        if message_type in {MessageType.file, MessageType.image} and not perms.can_send_files:
            raise PermissionDeniedError("Sending files is disabled in this chat")
        if message_type == MessageType.location:
            if not perms.can_send_location:
                raise PermissionDeniedError("Sharing location is disabled in this chat")
            if location is None:
                raise ValidationError("Location messages need coordinates")

        message = await self._append(
            room,
            caller,
            text,
            message_type,
            file_url=file_url,
            location=location,
            is_support=room.session.is_admin_chat,
        )
        posted = PostedMessage(room=room, message=message)
        await self._notify_participants(posted, caller)
        return posted

    async def post_system_message(self, room: ResolvedRoom, caller: Caller, content: str) -> PostedMessage:
        """Append a join/leave style event to the log. No permission checks."""
        message = await self._append(room, caller, content, MessageType.system, system=True)
        return PostedMessage(room=room, message=message)

    async def _append(
        self,
        room: ResolvedRoom,
        caller: Caller,
        content: str,
        message_type: MessageType,
        *,
        file_url: str | None = None,
        location: MessageLocation | None = None,
        system: bool = False,
        is_support: bool = False,
    ) -> ChatMessage:
        now = datetime.now(timezone.utc)
        session_doc = await self._sessions.find_one_and_update(
            {"_id": room.session.id},
            {"$inc": {"message_seq": 1}, "$set": {"last_activity": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if session_doc is None:
            raise NotFoundError("Chat session not found", details={"roomId": room.room_id})

        message = ChatMessage(
            id=new_id(),
            session_id=room.session.id,
            seq=session_doc["message_seq"],
            sender_id=caller.user_id,
            sender_role=caller.role.value,
            sender_name=await self.directory.display_name(caller.user_id),
            content=content,
            message_type=message_type,
            file_url=file_url,
            location=location,
            read_by=[ReadReceipt(user_id=caller.user_id, read_at=now)],
            is_system_message=system,
            is_support_message=is_support,
            priority=room.session.priority if is_support else None,
            timestamp=now,
        )
        doc = message.model_dump(mode="python", exclude={"id"})
        doc["_id"] = message.id
        await self._messages.insert_one(doc)
        return message

    async def _notify_participants(self, posted: PostedMessage, caller: Caller) -> None:
        if self.notifier is None:
            return
        session = posted.room.session
        message = posted.message
        payload = {"roomId": posted.room.room_id, "chatId": session.id, "messageId": message.id}
        text = f"New message from {message.sender_name}"

        recipients = [uid for uid in session.participants.user_ids() if uid != caller.user_id]
        for user_id in dict.fromkeys(recipients):
            await self.notifier.notify(
                NotificationEvent(type="chat:new_message", message=text, payload=payload, user_id=user_id)
            )
        if session.is_admin_chat and not caller.is_admin and not session.participants.admin_id:
            await self.notifier.notify(
                NotificationEvent(
                    type="chat:new_message", message=text, payload=payload, role=UserRole.admin
                )
            )

    async def mark_read(
        self,
        room_id: RoomId | str,
        caller: Caller,
        message_ids: list[str] | None = None,
        *,
        room: ResolvedRoom | None = None,
    ) -> list[str]:
        """Add the caller's read receipt to messages in the room.

        Idempotent per user and message. Ids that are not messages of this room
        are ignored. With no ids, every unread message in the room is marked.
        Returns the ids that gained a receipt.
        """
        if room is None:
            room = await self.registry.resolve(room_id, caller)
        flt: dict[str, Any] = {
            "session_id": room.session.id,
            "read_by.user_id": {"$ne": caller.user_id},
        }
        if message_ids is not None:
            ids = [str(m) for m in message_ids if m]
            if not ids:
                return []
            flt["_id"] = {"$in": ids}

        pending = await self._messages.find(flt, {"_id": 1}).to_list(None)
        marked = [str(d["_id"]) for d in pending]
        if not marked:
            return []
        receipt = {"user_id": caller.user_id, "read_at": datetime.now(timezone.utc)}
        # The $ne guard keeps a second concurrent mark from adding a duplicate.
        await self._messages.update_many(
            {**flt, "_id": {"$in": marked}}, {"$push": {"read_by": receipt}}
        )
        return marked

    async def fetch_log(self, room_id: RoomId | str, caller: Caller, *, limit: int | None = None) -> ChatLog:
        """Return the room's log in append order and mark it read for the caller."""
        room = await self.registry.resolve(room_id, caller)
        # Counted over the whole log so a limited page agrees with the room listing.
        unread = await count_unread(self._messages, room.session.id, caller.user_id)
        cursor = self._messages.find({"session_id": room.session.id}).sort([("seq", ASCENDING)])
        docs = await cursor.to_list(None)
        if limit is not None:
            docs = docs[-limit:]
        messages = [ChatMessage.from_doc(d) for d in docs]
        if unread:
            await self.mark_read(room.room_id, caller, room=room)
        return ChatLog(room=room, messages=messages, unread_count=unread)

    async def delete_message(self, room_id: RoomId | str, message_id: str, caller: Caller) -> ChatMessage:
        """Soft-delete: the message stays in the log flagged ``is_deleted``."""
        room = await self.registry.resolve(room_id, caller)
        doc = await self._messages.find_one({"_id": message_id, "session_id": room.session.id})
        if doc is None:
            raise NotFoundError("Message not found", details={"messageId": message_id})
        if doc.get("sender_id") != caller.user_id and not caller.is_admin:
            raise PermissionDeniedError("Only the sender or an admin can delete a message")
        updated = await self._messages.find_one_and_update(
            {"_id": message_id},
            {"$set": {"is_deleted": True}},
            return_document=ReturnDocument.AFTER,
        )
        return ChatMessage.from_doc(updated)
