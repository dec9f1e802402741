"""
MathPulse Worker – Notification WebSocket.

Transport for the notification hub. The connection's identity comes from
the gateway headers on the handshake; rooms are joined and left only by
explicit client messages:

    {"type": "join:student"}            own student room
    {"type": "join:teacher"}            teachers room
    {"type": "join:admin"}              admins room
    {"type": "leave:room", "room": ...}
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events.notification_hub import RoomAccessDenied
from identity import identity_from_headers

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Notifications"])

LEAVE_ROOM = "leave:room"


class SocketConnection:
    """Hub member for one WebSocket (the WebSocket itself is not hashable)."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send_json(self, data) -> None:
        await self.websocket.send_json(data)


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket) -> None:
    identity = identity_from_headers(websocket.headers)
    if identity is None:
        await websocket.close(code=1008)
        return

    hub = websocket.app.state.runtime.hub
    await websocket.accept()
    conn = SocketConnection(websocket)
    hub.connect(conn)
    logger.info(f"Socket connected: {identity.role.value} {identity.user_id}")

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid JSON"}})
                continue

            kind = message.get("type") if isinstance(message, dict) else None
            try:
                if kind == LEAVE_ROOM:
                    room = str(message.get("room", ""))
                    hub.leave(conn, room)
                    await websocket.send_json({"event": "room:left", "data": {"room": room}})
                else:
                    room = hub.join_for_identity(conn, identity, kind)
                    await websocket.send_json({"event": "room:joined", "data": {"room": room}})
            except (RoomAccessDenied, ValueError) as e:
                await websocket.send_json({"event": "error", "data": {"message": str(e)}})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(conn)
        logger.info(f"Socket disconnected: {identity.user_id}")
