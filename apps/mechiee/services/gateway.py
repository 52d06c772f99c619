"""Connection-level chat flows: join, leave, send, read, typing, location.

The gateway sits between a live transport and the core. Each handler raises a
`MechieeException` on failure; `handle` turns those into an `error` event for
the offending connection only, so one bad frame never tears down the socket.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError

from mechiee.core.exceptions import MechieeException, PermissionDeniedError, ValidationError
from mechiee.schemas.chat import Caller, MessageLocation, MessageType, ResolvedRoom, RoomId
from mechiee.services.chat import ChatEngine, PostedMessage
from mechiee.services.directory import Directory
from mechiee.services.presence import Connection, ConnectionState, PresenceHub, location_group
from mechiee.services.rooms import RoomRegistry

logger = logging.getLogger(__name__)


def _room_arg(data: Mapping[str, Any]) -> str:
    room = data.get("roomId") or data.get("room")
    if not room or not isinstance(room, str):
        raise ValidationError("Room is required", details="Expected 'roomId' or 'room'")
    return room


@dataclass
class RoomGateway:
    presence: PresenceHub
    registry: RoomRegistry
    chat: ChatEngine
    directory: Directory
    typing_quiet_interval_seconds: float = 3.0

    # ------------- identity -------------
    async def register(self, connection: Connection, user_id: str, role: str) -> ConnectionState:
        try:
            caller = Caller(user_id=user_id, role=role)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid identity", details=exc.errors(include_url=False)) from exc
        name = await self.directory.display_name(caller.user_id)
        return await self.presence.register(
            connection, caller.user_id, caller.role.value, user_name=name
        )

    def _caller(self, connection: Connection) -> tuple[Caller, ConnectionState]:
        state = self.presence.state_of(connection)
        if state is None or not state.user_id or not state.role:
            raise PermissionDeniedError("Register before using chat")
        return Caller(user_id=state.user_id, role=state.role), state

    # ------------- rooms -------------
    async def join_room(self, connection: Connection, room_id: str) -> ResolvedRoom:
        """Join a room, leaving the connection's current room first."""
        caller, state = self._caller(connection)
        room = await self.registry.resolve(room_id, caller)

        if state.current_room == room.channel:
            await self._send_info(connection, room)
            return room
        if state.current_room:
            await self.leave_room(connection, state.current_room)

        await self.presence.enter_room(connection, room.channel)
        name = state.user_name or await self.directory.display_name(caller.user_id)
        posted = await self.chat.post_system_message(room, caller, f"{name} joined the chat")
        await self.presence.send_to_room(room.channel, "receiveMessage", posted.event_payload())
        await self.presence.send_to_room(
            room.channel,
            "userJoined",
            {
                "userId": caller.user_id,
                "userRole": caller.role.value,
                "userName": name,
                "roomId": room.room_id,
            },
            exclude=connection,
        )
        await self._send_info(connection, room)
        logger.debug("User %s joined %s", caller.user_id, room.room_id)
        return room

    async def _send_info(self, connection: Connection, room: ResolvedRoom) -> None:
        info = room.session.info(room.room_id)
        info["typingQuietIntervalSeconds"] = self.typing_quiet_interval_seconds
        await self.presence.send_to_connection(connection, "chatSessionInfo", info)

    async def leave_room(self, connection: Connection, room_id: str) -> bool:
        """Leave a room gracefully. Leaving a room you are not in is a no-op."""
        state = self.presence.state_of(connection)
        rid = RoomId.parse(room_id)
        if state is None or state.current_room != rid.channel:
            return False
        caller, state = self._caller(connection)
        if not await self.presence.exit_room(connection, rid.channel):
            return False

        name = state.user_name or await self.directory.display_name(caller.user_id)
        departure = {
            "userId": caller.user_id,
            "userRole": caller.role.value,
            "userName": name,
            "roomId": str(rid),
        }
        try:
            # Access was checked on join; the tag may have changed since.
            room = await self.registry.resolve(rid)
        except MechieeException as exc:
            logger.info("Left %s without a log entry: %s", rid.channel, exc.message)
            await self.presence.send_to_room(rid.channel, "userLeft", departure)
            return True

        posted = await self.chat.post_system_message(room, caller, f"{name} left the chat")
        await self.presence.send_to_room(room.channel, "receiveMessage", posted.event_payload())
        await self.presence.send_to_room(room.channel, "userLeft", {**departure, "roomId": room.room_id})
        return True

    async def disconnect(self, connection: Connection) -> None:
        """Abrupt disconnect: tell the last room, persist nothing."""
        state = await self.presence.unregister(connection)
        if state is None or not state.current_room:
            return
        await self.presence.send_to_room(
            state.current_room,
            "userDisconnected",
            {"userId": state.user_id, "userRole": state.role, "roomId": state.current_room},
        )

    # ------------- messages -------------
    async def send_message(self, connection: Connection, data: Mapping[str, Any]) -> PostedMessage:
        data = _mapping(data)
        caller, state = self._caller(connection)
        room_id = _room_arg(data)
        sender = data.get("senderId") or data.get("sender")
        if sender and sender != caller.user_id:
            raise PermissionDeniedError("Sender ID mismatch")
        if state.current_room != RoomId.parse(room_id).channel:
            raise PermissionDeniedError("You are not in this room")

        try:
            message_type = MessageType(data.get("messageType") or MessageType.text.value)
            location = MessageLocation.model_validate(data["location"]) if data.get("location") else None
        except (ValueError, PydanticValidationError) as exc:
            raise ValidationError("Invalid message data", details=str(exc)) from exc

        posted = await self.chat.post_message(
            room_id,
            caller,
            data.get("content") or "",
            message_type,
            file_url=data.get("fileUrl"),
            location=location,
        )
        await self.broadcast_message(posted, sender=connection)
        return posted

    async def broadcast_message(self, posted: PostedMessage, *, sender: Connection | None = None) -> None:
        """Deliver a persisted message to the room and to absent participants."""
        channel = posted.room.channel
        payload = posted.event_payload()
        await self.presence.send_to_room(channel, "receiveMessage", payload)
        message = posted.message
        await self.presence.send_to_room(
            channel,
            "stopTyping",
            {
                "roomId": posted.room.room_id,
                "userId": message.sender_id,
                "userRole": message.sender_role,
                "userName": message.sender_name,
            },
            exclude=sender,
        )
        present = {s.user_id for s in self.presence.members(channel)}
        for user_id in posted.room.session.participants.user_ids():
            if user_id != message.sender_id and user_id not in present:
                await self.presence.send_to_user(user_id, "newMessage", payload)

    async def mark_read(self, connection: Connection, data: Mapping[str, Any]) -> list[str]:
        data = _mapping(data)
        caller, _state = self._caller(connection)
        room_id = _room_arg(data)
        message_ids = data.get("messageIds")
        if not isinstance(message_ids, list):
            raise ValidationError("Invalid markAsRead data", details="messageIds must be a list")
        room = await self.registry.resolve(room_id, caller)
        marked = await self.chat.mark_read(room_id, caller, message_ids, room=room)
        if marked:
            await self.presence.send_to_room(
                room.channel,
                "messagesRead",
                {
                    "userId": caller.user_id,
                    "userRole": caller.role.value,
                    "messageIds": marked,
                    "roomId": room.room_id,
                },
                exclude=connection,
            )
        return marked

    # ------------- ephemeral relays -------------
    async def start_typing(self, connection: Connection, data: Mapping[str, Any]) -> None:
        await self._relay_typing(connection, data, "typing")

    async def stop_typing(self, connection: Connection, data: Mapping[str, Any]) -> None:
        await self._relay_typing(connection, data, "stopTyping")

    async def _relay_typing(self, connection: Connection, data: Mapping[str, Any], event: str) -> None:
        # Pure relay; clients expire typing state after the quiet interval.
        data = _mapping(data)
        caller, state = self._caller(connection)
        rid = RoomId.parse(_room_arg(data))
        if state.current_room != rid.channel:
            return
        await self.presence.send_to_room(
            rid.channel,
            event,
            {
                "roomId": str(rid),
                "userId": caller.user_id,
                "userRole": caller.role.value,
                "userName": state.user_name,
            },
            exclude=connection,
        )

    async def join_location(self, connection: Connection, booking_id: str) -> None:
        self._caller(connection)
        if not booking_id:
            raise ValidationError("bookingId is required")
        await self.presence.join_group(connection, location_group(booking_id))

    async def leave_location(self, connection: Connection, booking_id: str) -> None:
        if booking_id:
            await self.presence.leave_group(connection, location_group(booking_id))

    async def relay_location(self, connection: Connection, data: Mapping[str, Any]) -> None:
        data = _mapping(data)
        caller, _state = self._caller(connection)
        booking_id = data.get("bookingId")
        location = data.get("location")
        if not booking_id or not isinstance(location, Mapping):
            raise ValidationError("Invalid location update")
        await self.presence.send_to_group(
            location_group(booking_id),
            "locationUpdated",
            {
                "bookingId": booking_id,
                "location": {**location, "userId": caller.user_id, "userRole": caller.role.value},
                "timestamp": datetime.now(timezone.utc),
            },
        )

    # ------------- dispatch -------------
    async def handle(self, connection: Connection, event: str, data: Any) -> None:
        """Route one inbound frame. Failures become an `error` event."""
        handler = self._handlers().get(event)
        if handler is None:
            await self.presence.send_to_connection(
                connection, "error", {"message": f"Unknown event: {event}", "code": "unknown_event"}
            )
            return
        try:
            await handler(connection, data if data is not None else {})
        except MechieeException as exc:
            logger.info("Rejected %s from connection: %s", event, exc.message)
            await self.presence.send_to_connection(connection, "error", exc.to_event())

    def _handlers(self) -> dict[str, Callable[[Connection, Any], Awaitable[Any]]]:
        return {
            "register": self._on_register,
            "joinRoom": self._on_join,
            "leaveRoom": self._on_leave,
            "sendMessage": self.send_message,
            "markAsRead": self.mark_read,
            "typing": self.start_typing,
            "stopTyping": self.stop_typing,
            "locationUpdate": self.relay_location,
            "joinLocationRoom": self._on_join_location,
            "leaveLocationRoom": self._on_leave_location,
        }

    async def _on_register(self, connection: Connection, data: Any) -> None:
        data = _mapping(data)
        await self.register(connection, data.get("userId") or "", data.get("role") or "")

    async def _on_join(self, connection: Connection, data: Any) -> None:
        await self.join_room(connection, _room_arg(_mapping(data)))

    async def _on_leave(self, connection: Connection, data: Any) -> None:
        await self.leave_room(connection, _room_arg(_mapping(data)))

    async def _on_join_location(self, connection: Connection, data: Any) -> None:
        await self.join_location(connection, _booking_arg(data))

    async def _on_leave_location(self, connection: Connection, data: Any) -> None:
        await self.leave_location(connection, _booking_arg(data))


def _mapping(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValidationError("Invalid event data", details="Data must be an object")
    return data


def _booking_arg(data: Any) -> str:
    if isinstance(data, Mapping):
        return str(data.get("bookingId") or "")
    return str(data or "")
