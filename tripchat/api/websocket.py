# tripchat/api/websocket.py

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import pydantic
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from tripchat.core.errors import AuthenticationRequired, ChatError
from tripchat.models.models import RoomEvent, SendMessageEvent
from tripchat.services.auth_service import extract_token, verify_token
from tripchat.services.gateway import ChatGateway
from tripchat.services.session import SessionHandle

logger = logging.getLogger(__name__)

router = APIRouter()

# Event names used by older trip chat clients
EVENT_ALIASES = {"join-trip": "join-room", "leave-trip": "leave-room"}


def get_gateway(websocket: WebSocket) -> ChatGateway:
    gateway = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("Chat gateway not initialized. create_app() must set app.state.gateway.")
    return gateway


async def send_error(
    handle: SessionHandle,
    code: str,
    message: str,
    event: Optional[str] = None,
    room_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> None:
    data: dict[str, Any] = {"code": code, "message": message, "event": event}
    if room_id:
        data["roomId"] = room_id
    if idempotency_key:
        data["idempotencyKey"] = idempotency_key
    await handle.emit("error", data)


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for trip chat.

    Protocol:
    =========

    Every frame is {"event": "<name>", "data": {...}}.

    Client -> Server Events:
    ------------------------
    Join Room:
        {"event": "join-room", "data": {"roomId": "trip-1"}}
        (also {"event": "join-trip", "data": "trip-1"})
        Response: {"event": "room-joined", "data": {"roomId": "trip-1"}}

    Leave Room:
        {"event": "leave-room", "data": {"roomId": "trip-1"}}
        Response: {"event": "room-left", "data": {"roomId": "trip-1"}}

    Send Message:
        {
            "event": "send-message",
            "data": {"roomId": "trip-1", "body": "hello", "idempotencyKey": "c-42"}
        }
        Response (sender only): {"event": "message-sent", "data": {"id": 7, "roomId": "trip-1", ...}}
        Broadcast (everyone in the room, sender included):
            {"event": "new-message", "data": {"id": 7, "roomId": "trip-1", "senderId": "...",
             "senderDisplayName": "...", "body": "hello", "createdAt": "..."}}

    Ping:
        {"event": "ping"}
        Response: {"event": "pong"}

    Server -> Client Events:
    ------------------------
    Online users (only with BROADCAST_PRESENCE=true):
        {"event": "online-users", "data": {"roomId": "trip-1", "userIds": ["..."]}}

    Error (only to the connection that caused it):
        {"event": "error", "data": {"code": "not_joined", "message": "...", "event": "send-message"}}

    Lifecycle:
    ==========
    1. Client connects with a session token (?token=, Bearer header or cookie)
    2. Token is verified before accepting; failure closes with 1008
    3. Client sends "join-room" for each trip chat it shows
    4. Client receives messages from joined rooms only
    5. On disconnect, automatically removed from all rooms
    """
    gateway = get_gateway(websocket)

    try:
        identity = verify_token(extract_token(websocket, gateway.settings.COOKIE_NAME), gateway.settings)
    except AuthenticationRequired as e:
        logger.warning("WebSocket rejected: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    handle = gateway.connect(websocket, identity)

    try:
        while True:
            raw = await websocket.receive_text()

            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await send_error(handle, "bad_request", "Invalid JSON")
                continue

            if not isinstance(frame, dict):
                await send_error(handle, "bad_request", "Frames must be JSON objects")
                continue

            await dispatch(gateway, handle, frame)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error: %s", e, exc_info=True)
    finally:
        await gateway.disconnect(handle)


async def dispatch(gateway: ChatGateway, handle: SessionHandle, frame: dict) -> None:
    """Run one client event to completion and answer the sender."""
    event = frame.get("event")
    data = frame.get("data") or {}
    logger.debug("Websocket input: event=%s user=%s", event, handle.user_id)

    if event == "ping":
        await handle.emit("pong")
        return

    event = EVENT_ALIASES.get(event, event)
    if event not in ("join-room", "leave-room", "send-message"):
        await send_error(handle, "bad_request", f"Unknown event: {event}", event=event)
        return

    # Older clients send the trip id itself as the payload of room events
    if isinstance(data, str) and event != "send-message":
        data = {"roomId": data}
    if not isinstance(data, dict):
        await send_error(handle, "bad_request", "Event data must be an object", event=event)
        return

    try:
        if event == "send-message":
            request = SendMessageEvent.model_validate(data)
        else:
            request = RoomEvent.model_validate(data)
    except pydantic.ValidationError as e:
        await send_error(handle, "bad_request", f"Invalid payload: {e.errors()[0]['msg']}", event=event)
        return

    try:
        if event == "join-room":
            if await gateway.join(handle, request.room_id):
                await handle.emit("room-joined", {"roomId": request.room_id})

        elif event == "leave-room":
            await gateway.leave(handle, request.room_id)
            # Leaving a room we are not in is confirmed too, unless the handle is gone
            if not handle.is_closed:
                await handle.emit("room-left", {"roomId": request.room_id})

        else:
            message = await gateway.send(handle, request.room_id, request.body, request.idempotency_key)
            if message is not None:
                await handle.emit(
                    "message-sent",
                    {
                        "id": message.id,
                        "roomId": message.room_id,
                        "idempotencyKey": request.idempotency_key,
                        "createdAt": message.created_at.isoformat(),
                    },
                )

    except ChatError as e:
        await send_error(
            handle,
            e.code,
            e.message,
            event=event,
            room_id=e.room_id or request.room_id,
            idempotency_key=getattr(request, "idempotency_key", None),
        )
