from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set

from ephemera.logging import get_logger
from ephemera.service.identity import ResolvedIdentity

logger = get_logger(__name__)

# Close code sent to sockets whose credentials were revoked
POLICY_UNAUTHORIZED = 4401


class Socket(Protocol):
    async def send_json(self, data: Any, mode: str = "text") -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


@dataclass
class Connection:
    id: str
    socket: Socket
    identity: Optional[ResolvedIdentity] = None
    token: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)


class ConnectionManager:
    """Registry of live real-time connections.

    Owned by the runtime and handed to the socket endpoint; nothing else
    reaches it through module globals. A connection keeps the raw access token
    it authenticated with so the endpoint can resolve it again on each event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def connect(self, socket: Socket) -> Connection:
        conn = Connection(id=str(uuid.uuid4()), socket=socket)
        with self._lock:
            self._connections[conn.id] = conn
        logger.debug("socket_connected", connection_id=conn.id)
        return conn

    def disconnect(self, connection_id: str) -> None:
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is None:
                return
            for room in conn.rooms:
                members = self._rooms.get(room)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        self._rooms.pop(room, None)
        logger.debug("socket_disconnected", connection_id=connection_id)

    def bind_identity(
        self, connection_id: str, identity: ResolvedIdentity, token: Optional[str] = None
    ) -> None:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is not None:
                conn.identity = identity
                conn.token = token

    def clear_identity(self, connection_id: str) -> None:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is not None:
                conn.identity = None
                conn.token = None

    def join(self, connection_id: str, room: str) -> bool:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                return False
            conn.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)
            return True

    def leave(self, connection_id: str, room: str) -> bool:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None or room not in conn.rooms:
                return False
            conn.rooms.discard(room)
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room, None)
            return True

    def room_members(self, room: str) -> List[str]:
        with self._lock:
            return sorted(self._rooms.get(room, ()))

    def connections_for_user(self, user_id: str) -> List[Connection]:
        with self._lock:
            return [
                c
                for c in self._connections.values()
                if c.identity is not None and c.identity.user_id == user_id
            ]

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._connections)

    async def _deliver(self, targets: List[Connection], message: dict) -> int:
        results = await asyncio.gather(
            *[c.socket.send_json(message) for c in targets], return_exceptions=True
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "socket_send_failed",
                    connection_id=conn.id,
                    error_type=type(result).__name__,
                )
                self.disconnect(conn.id)
            else:
                delivered += 1
        return delivered

    async def broadcast(self, room: str, event: str, data: Any) -> int:
        with self._lock:
            targets = [
                self._connections[cid]
                for cid in self._rooms.get(room, ())
                if cid in self._connections
            ]
        return await self._deliver(targets, {"event": event, "data": data})

    async def send_to_user(self, user_id: str, event: str, data: Any) -> int:
        return await self._deliver(
            self.connections_for_user(user_id), {"event": event, "data": data}
        )

    async def close_user_connections(
        self, user_id: str, *, code: int = POLICY_UNAUTHORIZED, reason: str = "session revoked"
    ) -> int:
        targets = self.connections_for_user(user_id)
        for conn in targets:
            try:
                await conn.socket.send_json({"event": "session-revoked", "data": {"reason": reason}})
                await conn.socket.close(code=code)
            except Exception as exc:
                # peer already gone
                logger.debug(
                    "socket_close_failed", connection_id=conn.id, error_type=type(exc).__name__
                )
            self.disconnect(conn.id)
        if targets:
            logger.info("user_sockets_closed", user_id=user_id, count=len(targets))
        return len(targets)
