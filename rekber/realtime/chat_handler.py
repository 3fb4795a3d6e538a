"""Chat event dispatch for join_room, send_message, leave_room and typing.

Every service error is turned into an ``error`` event on the caller's socket;
nothing raised while handling one frame closes the connection.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, WebSocket, status
from sqlalchemy.ext.asyncio import AsyncSession

from rekber.core.exceptions import ForbiddenError, ValidationError
from rekber.realtime.connection_manager import ChatConnectionManager, chat_manager
from rekber.services import chat_service

logger = logging.getLogger(__name__)


def _room_key(data: dict) -> tuple[str, str]:
    room_id = str(data.get("room_id") or "").strip()
    if not room_id:
        raise ValidationError("room_id is required")
    room_type = chat_service.validate_room_type(data.get("room_type"))
    return room_id, room_type


def _user_payload(user) -> dict[str, Any]:
    return {"id": user.id, "username": user.username, "role": user.role}


async def _join_room(ws, user, data, db, manager) -> None:
    room_id, room_type = _room_key(data)
    key = (room_id, room_type)
    already_member = manager.is_member(ws, key)
    # Subscribe before reading history; live frames wait until history is sent
    manager.join(ws, key, hold=True)
    try:
        history = await chat_service.join_room(db, user, room_id, room_type)
    except Exception:
        if already_member:
            await manager.release(ws, key)
        else:
            manager.leave(ws, key)
        raise
    await manager.send(ws, "chat_history", {
        "room_id": room_id, "room_type": room_type, "messages": history,
    })
    await manager.send(ws, "joined_room", {"room_id": room_id, "room_type": room_type})
    await manager.release(ws, key, skip_message_ids={m["id"] for m in history})
    await manager.broadcast(key, "user_joined", {
        "room_id": room_id, "room_type": room_type, "user": _user_payload(user),
    }, exclude=ws)


async def _send_message(ws, user, data, db, manager) -> None:
    room_id, room_type = _room_key(data)
    key = (room_id, room_type)
    if not manager.is_member(ws, key):
        raise ForbiddenError("Join the room before sending messages")
    message = await chat_service.post_message(
        db, user, room_id, room_type,
        message=data.get("message"),
        attachment_url=data.get("attachment"),
    )
    await manager.broadcast(key, "new_message", message)


async def _leave_room(ws, user, data, db, manager) -> None:
    room_id, room_type = _room_key(data)
    key = (room_id, room_type)
    if manager.leave(ws, key):
        await manager.broadcast(key, "user_left", {
            "room_id": room_id, "room_type": room_type, "user": _user_payload(user),
        })
    await manager.send(ws, "left_room", {"room_id": room_id, "room_type": room_type})


async def _typing(ws, user, data, db, manager) -> None:
    room_id, room_type = _room_key(data)
    key = (room_id, room_type)
    if not manager.is_member(ws, key):
        raise ForbiddenError("Join the room before sending typing indicators")
    await manager.broadcast(key, "user_typing", {
        "room_id": room_id,
        "room_type": room_type,
        "user": _user_payload(user),
        "is_typing": bool(data.get("is_typing", True)),
    }, exclude=ws)


_HANDLERS = {
    "join_room": _join_room,
    "send_message": _send_message,
    "leave_room": _leave_room,
    "typing": _typing,
}


async def handle_chat_event(
    ws: WebSocket,
    frame: Any,
    db: AsyncSession,
    manager: ChatConnectionManager = chat_manager,
) -> None:
    """Process one client frame ``{"event": ..., "data": {...}}``."""
    user = manager.user_for(ws)
    if user is None:
        return

    if not isinstance(frame, dict):
        await manager.send(ws, "error", {"message": "Frame must be a JSON object", "code": 400})
        return
    event = frame.get("event", "")
    data = frame.get("data") or {}
    handler = _HANDLERS.get(event)
    if handler is None:
        await manager.send(ws, "error", {"message": f"Unknown event: {event}", "code": 400})
        return
    if not isinstance(data, dict):
        await manager.send(ws, "error", {"message": "data must be an object", "code": 400})
        return

    try:
        await handler(ws, user, data, db, manager)
    except HTTPException as exc:
        await manager.send(ws, "error", {"message": exc.detail, "code": exc.status_code, "event": event})
    except Exception:
        logger.exception("Chat event %s failed for user %s", event, user.id)
        await manager.send(ws, "error", {
            "message": "Failed to process chat event",
            "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "event": event,
        })


async def handle_disconnect(ws: WebSocket, manager: ChatConnectionManager = chat_manager) -> None:
    user = manager.user_for(ws)
    rooms = manager.disconnect(ws)
    if user is None:
        return
    for room_id, room_type in rooms:
        await manager.broadcast((room_id, room_type), "user_left", {
            "room_id": room_id, "room_type": room_type, "user": _user_payload(user),
        })
