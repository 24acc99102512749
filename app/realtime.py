from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger("app.realtime")

EVENT_SHIFT_NEW = "shift:new"
EVENT_SHIFT_UPDATED = "shift:updated"
EVENT_SHIFT_DELETED = "shift:deleted"
EVENT_SHIFT_LOG_NEW = "shift:log-new"
EVENT_AUTHORIZATION_NEW = "shift:authorization-new"
EVENT_AUTHORIZATION_UPDATED = "shift:authorization-updated"
EVENT_NOTIFICATION_NEW = "notification:new"
EVENT_POS_SESSION_NEW = "pos-session:new"
EVENT_POS_SESSION_UPDATED = "pos-session:updated"
EVENT_POS_VERIFICATION_NEW = "pos-verification:new"
EVENT_BRANCH_ASSIGNMENTS_UPDATED = "user:branch-assignments-updated"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def branch_room(company_id: int, branch_id: int) -> str:
    # Branch ids are tenant-local, so rooms carry the company id as well.
    return f"branch:{company_id}:{branch_id}"


@dataclass(slots=True)
class _Connection:
    connection_id: str
    user_id: int
    queue: asyncio.Queue[dict[str, Any]]
    loop: asyncio.AbstractEventLoop
    rooms: set[str] = field(default_factory=set)


class RealtimeHub:
    """Room registry for websocket subscribers.

    Emits may come from worker threads (sync route handlers, the background
    worker), so messages are handed to each connection's loop thread-safely.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, _Connection] = {}
        self._rooms: dict[str, set[str]] = {}

    def register(
        self,
        user_id: int,
        queue: asyncio.Queue[dict[str, Any]],
        loop: asyncio.AbstractEventLoop,
    ) -> str:
        connection = _Connection(connection_id=uuid4().hex, user_id=user_id, queue=queue, loop=loop)
        with self._lock:
            self._connections[connection.connection_id] = connection
        self.join(connection.connection_id, user_room(user_id))
        return connection.connection_id

    def unregister(self, connection_id: str) -> None:
        with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return
            for room in connection.rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room, None)

    def join(self, connection_id: str, room: str) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return
            connection.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.rooms.discard(room)
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room, None)

    def has_active_user_session(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._rooms.get(user_room(user_id)))

    def emit(self, room: str, event: str, data: Any) -> int:
        message = {"event": event, "data": jsonable_encoder(data)}
        with self._lock:
            targets = [self._connections[item] for item in self._rooms.get(room, ()) if item in self._connections]

        delivered = 0
        for connection in targets:
            try:
                connection.loop.call_soon_threadsafe(connection.queue.put_nowait, message)
            except RuntimeError:
                # Loop already closed; the websocket handler unregisters on exit.
                logger.warning(
                    "realtime_emit_dropped",
                    extra={"room": room, "event": event, "connection_id": connection.connection_id},
                )
                continue
            delivered += 1
        return delivered

    def for_company(self, company_id: int) -> CompanyChannel:
        return CompanyChannel(self, company_id)


class CompanyChannel:
    """Tenant-scoped view of the hub handed to services."""

    def __init__(self, hub: RealtimeHub, company_id: int):
        self.hub = hub
        self.company_id = company_id

    def emit_to_branch(self, branch_id: int, event: str, data: Any) -> int:
        return self.hub.emit(branch_room(self.company_id, branch_id), event, data)

    def emit_to_user(self, user_id: int, event: str, data: Any) -> int:
        return self.hub.emit(user_room(user_id), event, data)

    def has_active_user_session(self, user_id: int) -> bool:
        return self.hub.has_active_user_session(user_id)
