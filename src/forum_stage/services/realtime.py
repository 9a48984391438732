"""Realtime fanout to connected WebSocket clients.

This module provides the RealtimeHub class that tracks which connections belong
to which rooms and pushes events to them. It handles:

- User rooms (``user:{id}``) joined on registration
- Thread rooms (``thread:{id}``) joined and left on request
- Global broadcasts to every registered connection
- Fire-and-forget sends that never block or fail the caller
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol
from uuid import uuid4

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Anything that can receive a JSON message, e.g. a Starlette WebSocket."""

    async def send_json(self, data: Any) -> None: ...


class RealtimeConnection:
    """A registered client connection."""

    def __init__(self, sink: MessageSink, user_id: str) -> None:
        self.id = uuid4().hex
        self.sink = sink
        self.user_id = user_id

    async def send(self, message: dict[str, Any]) -> None:
        await self.sink.send_json(message)

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RealtimeConnection) and other.id == self.id

    def __repr__(self) -> str:
        return f"RealtimeConnection(id={self.id!r}, user_id={self.user_id!r})"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def thread_room(thread_id: str) -> str:
    return f"thread:{thread_id}"


class RealtimeHub:
    """Room registry and event emitter."""

    def __init__(self) -> None:
        self._connections: set[RealtimeConnection] = set()
        self._rooms: dict[str, set[RealtimeConnection]] = defaultdict(set)
        self._memberships: dict[RealtimeConnection, set[str]] = defaultdict(set)
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, sink: MessageSink, user_id: str) -> RealtimeConnection:
        """Track a new connection and join it to its user room."""
        connection = RealtimeConnection(sink, user_id)
        self._connections.add(connection)
        self._join(connection, user_room(user_id))
        logger.debug("Connection %s registered for user %s", connection.id, user_id)
        return connection

    def unregister(self, connection: RealtimeConnection) -> None:
        """Forget a connection and remove it from every room."""
        self._connections.discard(connection)
        for room in self._memberships.pop(connection, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection)
            if not members:
                del self._rooms[room]
        logger.debug("Connection %s disconnected for user %s", connection.id, connection.user_id)

    def join_thread(self, connection: RealtimeConnection, thread_id: str) -> None:
        self._join(connection, thread_room(thread_id))

    def leave_thread(self, connection: RealtimeConnection, thread_id: str) -> None:
        room = thread_room(thread_id)
        self._memberships.get(connection, set()).discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._rooms[room]

    def rooms_for(self, connection: RealtimeConnection) -> set[str]:
        return set(self._memberships.get(connection, set()))

    def emit_to_thread(self, thread_id: str, event: str, data: Any) -> None:
        self._emit(self._rooms.get(thread_room(thread_id), set()), event, data)

    def emit_to_user(self, user_id: str, event: str, data: Any) -> None:
        self._emit(self._rooms.get(user_room(user_id), set()), event, data)

    def emit_global(self, event: str, data: Any) -> None:
        self._emit(self._connections, event, data)

    async def drain(self) -> None:
        """Wait for every scheduled send to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _join(self, connection: RealtimeConnection, room: str) -> None:
        self._rooms[room].add(connection)
        self._memberships[connection].add(room)

    def _emit(self, targets: set[RealtimeConnection], event: str, data: Any) -> None:
        if not targets:
            return
        message = {"event": event, "data": jsonable_encoder(data)}
        for connection in list(targets):
            task = asyncio.create_task(self._send(connection, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _send(self, connection: RealtimeConnection, message: dict[str, Any]) -> None:
        try:
            await connection.send(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to deliver %s to connection %s: %s",
                message.get("event"),
                connection.id,
                exc,
            )
