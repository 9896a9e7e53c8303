"""Test helpers: an in-memory transport and router shortcuts."""

from typing import Any, Dict, List, Optional

from sigrelay.connection import Connection
from sigrelay.router import MessageRouter


class FakeTransport:
    """Records outbound messages and close calls instead of touching a socket."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.close_calls: List[tuple] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("broken pipe")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_calls.append((code, reason))

    def types(self) -> List[str]:
        return [message["type"] for message in self.sent]

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message["type"] == message_type]

    def last(self) -> Dict[str, Any]:
        return self.sent[-1]

    def clear(self) -> None:
        self.sent.clear()


def make_connection(name: str, fail: bool = False, remote_address: str = "10.0.0.1") -> Connection:
    return Connection(FakeTransport(fail=fail), remote_address=remote_address, conn_id=name)


async def connect(router: MessageRouter, name: str, fail: bool = False) -> Connection:
    connection = make_connection(name, fail=fail)
    await router.handle_connect(connection)
    return connection


async def join(
    router: MessageRouter,
    connection: Connection,
    room_id: str = "r1",
    role: str = "host",
    peer_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    message = {"type": "join-room", "roomId": room_id, "role": role, **extra}
    if peer_id is not None:
        message["peerId"] = peer_id
    await router.handle_message(connection, message)
    return connection.transport.last()
