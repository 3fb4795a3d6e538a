"""Chat WebSocket connection manager.

Membership is process memory only: connection -> caller, and room key ->
joined connections. It is rebuilt by ``join_room`` after every reconnect and
is never consulted for authorization beyond "is this socket in the room".
"""

import json
import logging
from typing import Any

from fastapi import WebSocket

from rekber.config import settings
from rekber.core.auth import CurrentUser

logger = logging.getLogger(__name__)

RoomKey = tuple[str, str]  # (invoice, room_type)


def event_frame(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": data}


class ChatConnectionManager:
    """Track chat sockets, the user behind each one, and their joined rooms."""

    def __init__(self, max_connections: int | None = None):
        self.max_connections = max_connections or settings.chat_max_connections
        self._users: dict[WebSocket, CurrentUser] = {}
        self._rooms: dict[RoomKey, set[WebSocket]] = {}
        # Frames buffered for a member that is still receiving its history
        self._pending: dict[tuple[WebSocket, RoomKey], list[tuple[str, dict[str, Any]]]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._users)

    async def connect(self, ws: WebSocket, user: CurrentUser) -> bool:
        if len(self._users) >= self.max_connections:
            await ws.close(code=4029, reason="Too many chat connections")
            return False
        await ws.accept()
        self._users[ws] = user
        logger.info("Chat connected: %s (%s)", user.username, user.role)
        return True

    def disconnect(self, ws: WebSocket) -> list[RoomKey]:
        """Forget *ws* and return the rooms it was still in."""
        user = self._users.pop(ws, None)
        left: list[RoomKey] = []
        for key, members in list(self._rooms.items()):
            self._pending.pop((ws, key), None)
            if ws in members:
                members.discard(ws)
                left.append(key)
            if not members:
                del self._rooms[key]
        if user is not None:
            logger.info("Chat disconnected: %s", user.username)
        return left

    def user_for(self, ws: WebSocket) -> CurrentUser | None:
        return self._users.get(ws)

    def join(self, ws: WebSocket, key: RoomKey, *, hold: bool = False) -> None:
        """Add *ws* to the room.

        With ``hold=True`` room broadcasts to *ws* are buffered until
        :meth:`release`, so a joiner can be sent its history first without
        missing anything posted while that history was being read.
        """
        self._rooms.setdefault(key, set()).add(ws)
        if hold:
            self._pending.setdefault((ws, key), [])

    async def release(self, ws: WebSocket, key: RoomKey, skip_message_ids=()) -> int:
        """Deliver frames held for *ws*, dropping ``new_message`` frames already in its history."""
        held = self._pending.pop((ws, key), [])
        skip = set(skip_message_ids)
        sent = 0
        for event, data in held:
            if event == "new_message" and data.get("id") in skip:
                continue
            if not await self.send(ws, event, data):
                break
            sent += 1
        return sent

    def leave(self, ws: WebSocket, key: RoomKey) -> bool:
        self._pending.pop((ws, key), None)
        members = self._rooms.get(key)
        if not members or ws not in members:
            return False
        members.discard(ws)
        if not members:
            del self._rooms[key]
        return True

    def is_member(self, ws: WebSocket, key: RoomKey) -> bool:
        return ws in self._rooms.get(key, ())

    async def send(self, ws: WebSocket, event: str, data: dict[str, Any]) -> bool:
        try:
            await ws.send_text(json.dumps(event_frame(event, data), default=str))
            return True
        except Exception:
            logger.warning("Failed to send %s to chat socket", event)
            self.disconnect(ws)
            return False

    async def broadcast(
        self,
        key: RoomKey,
        event: str,
        data: dict[str, Any],
        *,
        exclude: WebSocket | None = None,
    ) -> int:
        """Send one frame to every member of the room. Returns deliveries made."""
        members = self._rooms.get(key)
        if not members:
            return 0
        payload = json.dumps(event_frame(event, data), default=str)
        dead: list[WebSocket] = []
        sent = 0
        for ws in list(members):
            if ws is exclude:
                continue
            held = self._pending.get((ws, key))
            if held is not None:
                held.append((event, data))
                continue
            try:
                await ws.send_text(payload)
                sent += 1
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)
        return sent


# Singleton
chat_manager = ChatConnectionManager()


async def broadcast_room_message(invoice: str, room_type: str, message: dict[str, Any]) -> int:
    """Fan a persisted message out to the room. Scheduled after commit."""
    return await chat_manager.broadcast((invoice, room_type), "new_message", message)
