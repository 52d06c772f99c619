from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from mechiee.api.dependencies import get_caller, require_role
from mechiee.core.dependencies import get_chat_engine, get_gateway, get_notifier, get_room_registry
from mechiee.schemas.chat import (
    Caller,
    RoomId,
    RoomKind,
    SendMessageRequest,
    SupportStats,
    TicketCreate,
    TicketUpdate,
    UserRole,
)
from mechiee.schemas.notification import NotificationEvent
from mechiee.services.chat import ChatEngine
from mechiee.services.gateway import RoomGateway
from mechiee.services.notifier import Notifier
from mechiee.services.rooms import RoomRegistry

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.get("/rooms")
async def list_rooms(
    caller: Caller = Depends(get_caller),
    registry: RoomRegistry = Depends(get_room_registry),
) -> list[dict[str, Any]]:
    return [summary.to_wire() for summary in await registry.list_rooms(caller)]


@router.get("/my-support-chats")
async def my_support_chats(
    caller: Caller = Depends(get_caller),
    registry: RoomRegistry = Depends(get_room_registry),
) -> list[dict[str, Any]]:
    chats = await registry.my_support_chats(caller)
    out = []
    for chat in chats:
        rid = RoomId(kind=RoomKind.admin_support, target_id=chat.id)
        out.append(await registry.summarize(rid, chat, caller.user_id))
    return [summary.to_wire() for summary in out]


@router.get("/admin-support/stats", response_model=SupportStats)
async def support_stats(
    _caller: Caller = Depends(require_role(UserRole.admin)),
    registry: RoomRegistry = Depends(get_room_registry),
) -> SupportStats:
    return await registry.support_stats()


@router.post("/admin-support", status_code=status.HTTP_201_CREATED)
async def open_support_ticket(
    payload: TicketCreate,
    caller: Caller = Depends(get_caller),
    registry: RoomRegistry = Depends(get_room_registry),
    notifier: Notifier = Depends(get_notifier),
) -> dict[str, Any]:
    session = await registry.open_support_ticket(caller, payload)
    room_id = f"admin_support_{session.id}"
    await notifier.notify(
        NotificationEvent(
            type="support:new",
            message=f"New support request: {session.title}",
            payload={"chatId": session.id, "roomId": room_id, "priority": session.priority.value},
            role=UserRole.admin,
        )
    )
    return {"chatId": session.id, "roomId": room_id, "chat": session.to_wire()}


@router.put("/admin-support/{ticket_id}/status")
async def update_ticket_status(
    ticket_id: str,
    payload: TicketUpdate,
    caller: Caller = Depends(require_role(UserRole.admin)),
    registry: RoomRegistry = Depends(get_room_registry),
) -> dict[str, Any]:
    session = await registry.update_ticket_status(ticket_id, payload, caller)
    return {"chat": session.to_wire()}


@router.post("/send-message", status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: SendMessageRequest,
    caller: Caller = Depends(get_caller),
    engine: ChatEngine = Depends(get_chat_engine),
    gateway: RoomGateway = Depends(get_gateway),
) -> dict[str, Any]:
    posted = await engine.post_message(
        payload.room_id,
        caller,
        payload.content,
        payload.message_type,
        file_url=payload.file_url,
        location=payload.location,
    )
    await gateway.broadcast_message(posted)
    return {"message": posted.event_payload()}


@router.get("/{room_id}/messages")
async def room_messages(
    room_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    engine: ChatEngine = Depends(get_chat_engine),
) -> dict[str, Any]:
    log = await engine.fetch_log(room_id, caller, limit=limit)
    return {
        "roomId": log.room.room_id,
        "chatInfo": log.room.session.info(log.room.room_id),
        "messages": [m.to_wire() for m in log.messages],
        "unreadCount": log.unread_count,
    }


@router.delete("/{room_id}/messages/{message_id}")
async def delete_message(
    room_id: str,
    message_id: str,
    caller: Caller = Depends(get_caller),
    engine: ChatEngine = Depends(get_chat_engine),
) -> dict[str, Any]:
    message = await engine.delete_message(room_id, message_id, caller)
    return {"message": message.to_wire()}


@router.post("/{room_id}/resync")
async def resync_participants(
    room_id: str,
    _caller: Caller = Depends(require_role(UserRole.admin)),
    registry: RoomRegistry = Depends(get_room_registry),
) -> dict[str, Any]:
    session = await registry.resync_participants(room_id)
    return {"chat": session.to_wire()}
