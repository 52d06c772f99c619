from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from mechiee.core.dependencies import get_gateway
from mechiee.core.exceptions import MechieeException
from mechiee.services.gateway import RoomGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class WebSocketConnection:
    """Identity-hashed wrapper so the hub can key its maps on connections."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send_json(self, data: Any) -> None:
        await self.websocket.send_json(data)


@router.websocket("/ws")
async def realtime_ws(
    websocket: WebSocket,
    user_id: str | None = None,
    role: str | None = None,
    gateway: RoomGateway = Depends(get_gateway),
) -> None:
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    await gateway.presence.attach(connection)
    try:
        if user_id and role:
            try:
                await gateway.register(connection, user_id, role)
            except MechieeException as exc:
                await connection.send_json({"event": "error", "data": exc.to_event()})
                await websocket.close(code=1008)
                return
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                frame = None
            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await connection.send_json(
                    {
                        "event": "error",
                        "data": {"message": "Frames must be {event, data} objects", "code": "bad_frame"},
                    }
                )
                continue
            await gateway.handle(connection, frame["event"], frame.get("data"))
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected")
    finally:
        await gateway.disconnect(connection)
