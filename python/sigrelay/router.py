"""
Message routing for sigrelay.

MessageRouter interprets inbound messages, drives the connection registry
and room table, and performs broadcast and targeted delivery. Every event
(message, disconnect, forced termination) runs under one lock so that
multi-step sequences such as join/evict/notify are atomic with respect to
each other.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .connection import ClientInfo, Connection, ConnectionRegistry
from .protocol import (
    CLOSE_NORMAL,
    SIGNALING_TYPES,
    ClientReadyMessage,
    ErrorCode,
    ErrorMessage,
    HostDisconnectedMessage,
    JoinedRoomMessage,
    JoinRoomMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    PongMessage,
    RegisterMessage,
    RoutableMessage,
    SignalingError,
    describe_validation_error,
    parse_client_message,
    sanitize_envelope,
)
from .room import Role, Room, RoomManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_SIZE = 256 * 1024  # characters per text frame

# clientType of the legacy register message that claims the host role
LEGACY_HOST_CLIENT_TYPE = "quest"


class MessageRouter:
    """
    Routes signaling messages between peers.

    Handles:
    - Joining rooms (with peer-id eviction and single-host enforcement)
    - Relaying offers, answers and ICE candidates (broadcast or unicast)
    - Generic room broadcasts
    - Disconnect cleanup and peer notifications
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        rooms: Optional[RoomManager] = None,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        bind_peer_identity: bool = False,
    ):
        self._registry = registry or ConnectionRegistry()
        self._rooms = rooms or RoomManager()
        self._max_message_size = max_message_size
        self._bind_peer_identity = bind_peer_identity
        self._lock = asyncio.Lock()

        self.failed_deliveries = 0

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def rooms(self) -> RoomManager:
        return self._rooms

    # =========================================================================
    # Lifecycle events
    # =========================================================================

    async def handle_connect(self, connection: Connection) -> None:
        """Register a newly admitted connection."""
        async with self._lock:
            self._registry.add(connection)
        logger.info(f"Client connected: {connection.conn_id} from {connection.remote_address}")

    async def handle_text(self, connection: Connection, raw: str) -> None:
        """Handle a raw text frame: size ceiling, JSON decode, then dispatch."""
        if len(raw) > self._max_message_size:
            await self._send_error(connection, ErrorCode.PAYLOAD_TOO_LARGE, "Message too large.", "message")
            return

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, RecursionError):
            await self._send_error(connection, ErrorCode.INVALID_MESSAGE, "Invalid JSON.", "parse")
            return

        await self.handle_message(connection, data)

    async def handle_message(self, connection: Connection, data: Any) -> None:
        """Handle one decoded inbound message."""
        async with self._lock:
            if connection.conn_id not in self._registry:
                logger.debug(f"Dropping message from unregistered connection {connection.conn_id}")
                return
            # Any traffic proves the peer is still there
            connection.is_alive = True
            await self._dispatch(connection, data)

    async def handle_disconnect(self, connection: Connection, reason: Optional[str] = None) -> None:
        """
        Handle a transport close. Idempotent; never raises.

        The connection is always removed from the registry, even if the
        room cleanup fails.
        """
        async with self._lock:
            await self._disconnect(connection, reason)

    async def terminate(self, connection: Connection, code: int, reason: str) -> None:
        """Close a connection from the server side and run the disconnect path."""
        async with self._lock:
            await connection.close(code, reason)
            await self._disconnect(connection, reason)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch(self, connection: Connection, data: Any) -> None:
        context = data.get("type") if isinstance(data, dict) and isinstance(data.get("type"), str) else "message"

        try:
            if isinstance(data, dict):
                data = sanitize_envelope(data)
            message = parse_client_message(data)
        except ValidationError as exc:
            await self._send_error(connection, self._validation_code(exc), describe_validation_error(exc), context)
            return
        except ValueError as exc:
            await self._send_error(connection, ErrorCode.INVALID_MESSAGE, str(exc), context)
            return

        try:
            if message.type == "ping":
                await connection.send(PongMessage(timestamp=time.time()))
            elif message.type == "pong":
                pass  # heartbeat acknowledgement, already recorded above
            elif isinstance(message, RegisterMessage):
                await self._handle_register(connection, message)
            elif isinstance(message, JoinRoomMessage):
                await self._handle_join(connection, message)
            elif message.type in SIGNALING_TYPES:
                await self._handle_signal(connection, message, data)
            else:
                await self._handle_generic(connection, data)
        except SignalingError as exc:
            await self._send_error(connection, exc.code, exc.message, exc.context or message.type)
        except Exception:
            logger.exception(f"Error handling {message.type} from {connection.conn_id}")
            await self._send_error(connection, ErrorCode.INTERNAL_ERROR, "Internal error.", message.type)

    @staticmethod
    def _validation_code(exc: ValidationError) -> ErrorCode:
        for err in exc.errors():
            field = err.get("loc", ("",))[0] if err.get("loc") else ""
            if field in ("roomId", "room_id"):
                return ErrorCode.INVALID_ROOM_ID
            if field in ("peerId", "peer_id", "targetPeerId", "target_peer_id"):
                return ErrorCode.INVALID_PEER_ID
            if field in ("sdp", "candidate") and err.get("type") == "string_too_long":
                return ErrorCode.PAYLOAD_TOO_LARGE
        return ErrorCode.INVALID_MESSAGE

    # =========================================================================
    # Join
    # =========================================================================

    async def _handle_register(self, connection: Connection, message: RegisterMessage) -> None:
        """Legacy join: a ``quest`` client type takes the host role."""
        role = Role.HOST if message.client_type.lower() == LEGACY_HOST_CLIENT_TYPE else Role.CLIENT
        await self._join(
            connection,
            room_id=message.room_id,
            role=role,
            peer_id=message.peer_id,
            client_type=message.client_type,
            context="register",
        )

    async def _handle_join(self, connection: Connection, message: JoinRoomMessage) -> None:
        await self._join(
            connection,
            room_id=message.room_id,
            role=Role(message.role),
            peer_id=message.peer_id or f"peer-{connection.conn_id}",
            max_guests=message.max_connections,
            client_type=message.client_type,
            context="join-room",
        )

    async def _join(
        self,
        connection: Connection,
        room_id: str,
        role: Role,
        peer_id: str,
        max_guests: Optional[int] = None,
        client_type: Optional[str] = None,
        context: str = "join-room",
    ) -> None:
        previous = self._registry.get_client(connection.conn_id)

        self._check_peer_identity(connection, peer_id, context)

        # A peer id belongs to at most one connection
        holders = [h for h in self._registry.find_by_peer_id(peer_id) if h.conn_id != connection.conn_id]

        # Refuse before anything changes; evicted holders free their slots
        existing = self._rooms.get(room_id)
        if existing is not None:
            leaving = [h.conn_id for h in holders if h.room_id == room_id]
            existing.check_admission(connection, role, peer_id, leaving=leaving)

        for holder in holders:
            await self._evict(holder, new_room_id=room_id, new_role=role)

        room = self._rooms.get_or_create(room_id, max_guests)
        if role is Role.HOST:
            replaced = room.add_host(connection, peer_id)
        else:
            room.add_client(connection)
            replaced = None

        if replaced is not None:
            self._registry.remove(replaced.conn_id)
            await replaced.close(CLOSE_NORMAL, "replaced")

        # Moving between rooms: leave the old one only once the new slot is held
        if previous is not None and previous.room_id != room_id:
            await self._leave_room(previous)

        if client_type is None and connection.auth is not None:
            client_type = connection.auth.client_type

        info = ClientInfo(
            connection=connection,
            peer_id=peer_id,
            role=role,
            room_id=room_id,
            authenticated=connection.authenticated,
            client_type=client_type,
        )
        self._registry.set_client(info)
        logger.info(f"Peer {peer_id} joined room {room_id} as {role.value} ({connection.conn_id})")

        await connection.send(
            JoinedRoomMessage(room_id=room_id, peer_id=peer_id, role=role.value, is_host=role is Role.HOST)
        )
        await self.broadcast(room, PeerJoinedMessage(peer_id=peer_id, role=role.value), exclude=connection.conn_id)

        if role is Role.CLIENT and room.has_live_host:
            delivered = await room.host.send(ClientReadyMessage(peer_id=peer_id))
            if not delivered:
                self.failed_deliveries += 1

    def _check_peer_identity(self, connection: Connection, peer_id: str, context: str) -> None:
        """Refuse to evict a peer id held under another authenticated identity."""
        if not self._bind_peer_identity or connection.auth is None:
            return

        for holder in self._registry.find_by_peer_id(peer_id):
            other = holder.connection
            if other.conn_id == connection.conn_id or other.auth is None:
                continue
            if other.auth.client_id != connection.auth.client_id:
                raise SignalingError(
                    f"Peer ID '{peer_id}' is held by another client",
                    code=ErrorCode.PEER_ID_TAKEN,
                    context=context,
                )

    async def _evict(self, holder: ClientInfo, new_room_id: str, new_role: Role) -> None:
        """
        Force-close the previous holder of a peer id and strip it from its room.

        A holder replaced in place (same room, same role) leaves silently; the
        replacement's peer-joined tells the room. Otherwise the room is told
        it left, including host-disconnected when it was the host.
        """
        logger.warning(
            f"Evicting connection {holder.conn_id} holding peer id {holder.peer_id} (replaced)"
        )
        self._registry.remove(holder.conn_id)
        await holder.connection.close(CLOSE_NORMAL, "replaced")

        if holder.room_id == new_room_id and holder.role is new_role:
            room = self._rooms.get(holder.room_id)
            if room is not None:
                room.remove(holder.connection)
                self._rooms.delete_if_empty(holder.room_id)
        else:
            await self._leave_room(holder)

    # =========================================================================
    # Relay
    # =========================================================================

    def _require_joined(self, connection: Connection, context: str) -> tuple[ClientInfo, Room]:
        info = self._registry.get_client(connection.conn_id)
        room = self._rooms.get(info.room_id) if info is not None else None
        if info is None or room is None:
            raise SignalingError("Must join a room first.", code=ErrorCode.NOT_JOINED, context=context)
        return info, room

    def _find_peer(self, room: Room, peer_id: str, exclude: Optional[str] = None) -> Optional[ClientInfo]:
        for member in room.members():
            if member.conn_id == exclude:
                continue
            info = self._registry.get_client(member.conn_id)
            if info is not None and info.peer_id == peer_id:
                return info
        return None

    async def _handle_signal(self, connection: Connection, message: RoutableMessage, data: Dict[str, Any]) -> None:
        """Relay an offer/answer/ice-candidate, unicast when ``targetPeerId`` is set."""
        info, room = self._require_joined(connection, message.type)

        payload = dict(data)
        payload["sourcePeerId"] = info.peer_id

        target_peer_id = message.target_peer_id
        if not target_peer_id:
            await self.broadcast(room, payload, exclude=connection.conn_id)
            return

        target = self._find_peer(room, target_peer_id, exclude=connection.conn_id)
        if target is None or not target.connection.is_open:
            raise SignalingError(
                f"Target peer '{target_peer_id}' not found in room.",
                code=ErrorCode.TARGET_NOT_FOUND,
                context=message.type,
            )

        if await target.connection.send(payload):
            logger.debug(f"Relayed {message.type} from {info.peer_id} to {target_peer_id}")
        else:
            self.failed_deliveries += 1
            logger.warning(f"Failed to relay {message.type} from {info.peer_id} to {target_peer_id}")

    async def _handle_generic(self, connection: Connection, data: Dict[str, Any]) -> None:
        """Any unrecognised type is broadcast to the rest of the sender's room."""
        info, room = self._require_joined(connection, data.get("type", "message"))

        payload = dict(data)
        payload["sourcePeerId"] = info.peer_id
        await self.broadcast(room, payload, exclude=connection.conn_id)

    async def broadcast(self, room: Room, message: Any, exclude: Optional[str] = None) -> int:
        """
        Deliver a message to every live member of a room except ``exclude``.

        A failure to one recipient does not stop delivery to the others;
        failures are counted and logged.

        Returns:
            Number of members the message was delivered to.
        """
        data = message.to_wire() if hasattr(message, "to_wire") else message
        recipients = [m for m in room.members() if m.conn_id != exclude and m.is_open]
        if not recipients:
            return 0

        results = await asyncio.gather(*(member.send(data) for member in recipients))
        failed = results.count(False)
        if failed:
            self.failed_deliveries += failed
            logger.warning(f"Broadcast to room {room.room_id}: {failed}/{len(recipients)} deliveries failed")
        return len(recipients) - failed

    # =========================================================================
    # Disconnect
    # =========================================================================

    async def _disconnect(self, connection: Connection, reason: Optional[str]) -> None:
        connection.mark_closed(reason)
        known = connection.conn_id in self._registry
        try:
            info = self._registry.get_client(connection.conn_id)
            if info is not None:
                await self._leave_room(info)
        except Exception:
            logger.exception(f"Error cleaning up connection {connection.conn_id}")
        finally:
            self._registry.remove(connection.conn_id)

        if known:
            logger.info(f"Client disconnected: {connection.conn_id} ({reason or 'closed'})")

    async def _leave_room(self, info: ClientInfo) -> None:
        """Remove a peer from its room, notify the rest, and drop the room once empty."""
        room = self._rooms.get(info.room_id)
        if room is None:
            return

        role = room.remove(info.connection)
        if role is None:
            return

        logger.info(f"Peer {info.peer_id} left room {info.room_id}")
        await self.broadcast(room, PeerLeftMessage(peer_id=info.peer_id, role=role.value))
        if role is Role.HOST:
            await self.broadcast(room, HostDisconnectedMessage())

        self._rooms.delete_if_empty(info.room_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _send_error(
        self, connection: Connection, code: ErrorCode, message: str, context: Optional[str] = None
    ) -> None:
        """Send an error message to a connection."""
        if not await connection.send(ErrorMessage(error=message, context=context, code=code.value)):
            logger.debug(f"Failed to send error message to {connection.conn_id}")

    def stats(self) -> Dict[str, Any]:
        return {
            "connections": self._registry.connection_count,
            "clients": self._registry.client_count,
            "rooms": self._rooms.room_count,
            "failedDeliveries": self.failed_deliveries,
        }


__all__ = [
    "DEFAULT_MAX_MESSAGE_SIZE",
    "LEGACY_HOST_CLIENT_TYPE",
    "MessageRouter",
]
