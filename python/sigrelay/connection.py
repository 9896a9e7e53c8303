"""
Connection handles and the registry of live sessions.

Every connection gets a generated ``conn_id`` at accept time; the core
keys all of its tables by that id rather than by the transport object.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .auth import TokenRecord
from .protocol import CLOSE_GOING_AWAY, CLOSE_NORMAL, CLOSE_POLICY_VIOLATION
from .room import Role

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the core needs from a transport session (a Starlette WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None: ...


class Connection:
    """
    One live transport session.

    ``send`` and ``close`` never raise: a failed delivery is reported
    through the return value and logged.
    """

    def __init__(
        self,
        transport: Transport,
        remote_address: str = "unknown",
        conn_id: Optional[str] = None,
    ):
        self.conn_id = conn_id or uuid.uuid4().hex
        self.transport = transport
        self.remote_address = remote_address
        self.connected_at = time.time()

        # Heartbeat state: False while a probe is unanswered
        self.is_alive = True

        self.authenticated = False
        self.auth: Optional[TokenRecord] = None
        self.closed = False
        self.close_reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return not self.closed

    def authenticate(self, record: TokenRecord) -> None:
        self.authenticated = True
        self.auth = record

    async def send(self, message: Any) -> bool:
        """
        Send a message (a wire model or a plain dict).

        Returns:
            True if the transport accepted the message.
        """
        if self.closed:
            return False

        data = message.to_wire() if hasattr(message, "to_wire") else message
        try:
            await self.transport.send_json(data)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.conn_id}: {e}")
            return False

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close the transport. Safe to call more than once."""
        if self.closed:
            return
        self.mark_closed(reason)
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing connection {self.conn_id}: {e}")

    def mark_closed(self, reason: Optional[str] = None) -> None:
        """Record that the transport is gone without touching it."""
        self.closed = True
        if reason and not self.close_reason:
            self.close_reason = reason

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"Connection({self.conn_id!r}, {self.remote_address!r}, {state})"


@dataclass
class ClientInfo:
    """Session metadata for a connection that has joined a room."""

    connection: Connection
    peer_id: str
    role: Role
    room_id: str
    authenticated: bool = False
    client_type: Optional[str] = None
    joined_at: float = field(default_factory=time.time)

    @property
    def conn_id(self) -> str:
        return self.connection.conn_id

    @property
    def is_host(self) -> bool:
        return self.role is Role.HOST


class ConnectionRegistry:
    """
    Owns every live connection and the ClientInfo of joined ones.

    Rooms hold only membership references; the canonical session data
    lives here.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._clients: Dict[str, ClientInfo] = {}

    def add(self, connection: Connection) -> None:
        self._connections[connection.conn_id] = connection

    def remove(self, conn_id: str) -> Optional[ClientInfo]:
        """Forget a connection entirely, returning its ClientInfo if it had one."""
        self._connections.pop(conn_id, None)
        return self._clients.pop(conn_id, None)

    def get(self, conn_id: str) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._connections

    def get_client(self, conn_id: str) -> Optional[ClientInfo]:
        return self._clients.get(conn_id)

    def set_client(self, info: ClientInfo) -> None:
        """Insert or replace the ClientInfo of a registered connection."""
        self._connections.setdefault(info.conn_id, info.connection)
        self._clients[info.conn_id] = info

    def drop_client(self, conn_id: str) -> Optional[ClientInfo]:
        return self._clients.pop(conn_id, None)

    def find_by_peer_id(self, peer_id: str) -> List[ClientInfo]:
        return [info for info in self._clients.values() if info.peer_id == peer_id]

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def clients(self) -> Iterator[ClientInfo]:
        return iter(list(self._clients.values()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def client_count(self) -> int:
        return len(self._clients)


__all__ = [
    "CLOSE_NORMAL",
    "CLOSE_GOING_AWAY",
    "CLOSE_POLICY_VIOLATION",
    "Transport",
    "Connection",
    "ClientInfo",
    "ConnectionRegistry",
]
