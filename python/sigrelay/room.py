"""
Room management for sigrelay.

Provides the Room class, which owns the host slot and guest set of one
named room, and RoomManager, which creates rooms lazily and deletes them
once empty.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from .protocol import ErrorCode, SignalingError, is_valid_room_id

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROOM_SIZE = 10


class Role(str, Enum):
    """Membership role inside a room."""

    HOST = "host"
    CLIENT = "client"


class HostSlotTaken(SignalingError):
    """The room already has a live host with a different peer id."""

    code = ErrorCode.HOST_SLOT_TAKEN


class RoomFull(SignalingError):
    """The room's guest set is at capacity."""

    code = ErrorCode.ROOM_FULL


class Room:
    """
    Represents one signaling room.

    Invariants:
    - At most one host connection at any time.
    - The guest count never exceeds ``max_guests``.

    Room methods only mutate membership; closing replaced connections
    and notifying peers is left to the caller.
    """

    def __init__(self, room_id: str, max_guests: int = DEFAULT_MAX_ROOM_SIZE):
        """
        Initialize a room.

        Args:
            room_id: Unique identifier for the room.
            max_guests: Maximum number of non-host members.
        """
        self.room_id = room_id
        self.max_guests = max_guests
        self.created_at = time.time()

        self._host: Connection | None = None
        self._host_peer_id: str | None = None

        # Guests: conn_id -> Connection
        self._guests: dict[str, Connection] = {}

    @property
    def host(self) -> Connection | None:
        """Get the connection holding the host slot, live or not."""
        return self._host

    @property
    def host_peer_id(self) -> str | None:
        return self._host_peer_id

    @property
    def has_live_host(self) -> bool:
        return self._host is not None and self._host.is_open

    @property
    def guests(self) -> list[Connection]:
        return list(self._guests.values())

    @property
    def guest_count(self) -> int:
        return len(self._guests)

    @property
    def is_empty(self) -> bool:
        """Check if room has neither a host nor guests."""
        return self._host is None and not self._guests

    def members(self) -> list[Connection]:
        """Get the host (if any) followed by every guest."""
        members = [self._host] if self._host is not None else []
        members.extend(self._guests.values())
        return members

    def role_of(self, conn_id: str) -> Role | None:
        if self._host is not None and self._host.conn_id == conn_id:
            return Role.HOST
        if conn_id in self._guests:
            return Role.CLIENT
        return None

    def check_admission(
        self,
        connection: Connection,
        role: Role,
        peer_id: str,
        leaving: Iterable[str] = (),
    ) -> None:
        """
        Check that a join would succeed, without changing membership.

        Args:
            connection: The joining connection.
            role: The role it asks for.
            peer_id: The peer id it joins with.
            leaving: conn_ids about to be removed from the room; their
                slots are treated as free.

        Raises:
            HostSlotTaken: If a live host with another peer id would remain.
            RoomFull: If no guest slot would be free.
        """
        leaving = set(leaving)
        conn_id = connection.conn_id

        if role is Role.HOST:
            current = self._host
            if (
                current is not None
                and current.conn_id != conn_id
                and current.conn_id not in leaving
                and current.is_open
                and self._host_peer_id != peer_id
            ):
                raise HostSlotTaken(f"Room '{self.room_id}' already has a host")
            return

        if conn_id in self._guests:
            return
        staying = sum(1 for guest_id in self._guests if guest_id not in leaving)
        if staying >= self.max_guests:
            raise RoomFull(f"Room '{self.room_id}' is full ({self.max_guests} guests)")

    def add_host(self, connection: Connection, peer_id: str) -> Connection | None:
        """
        Place a connection in the host slot.

        A live host with the same peer id is replaced (the host refreshing
        its session); a dead host is replaced silently.

        Args:
            connection: The connection claiming the slot.
            peer_id: The peer id the connection joins with.

        Returns:
            The connection that previously held the slot, if any. The caller
            closes it when it is still open.

        Raises:
            HostSlotTaken: If a live host with another peer id holds the slot.
        """
        current = self._host
        replaced: Connection | None = None

        if current is not None and current.conn_id != connection.conn_id:
            if current.is_open and self._host_peer_id != peer_id:
                raise HostSlotTaken(f"Room '{self.room_id}' already has a host")
            replaced = current
            logger.info(
                f"Host slot in room {self.room_id} handed from {current.conn_id} "
                f"to {connection.conn_id} ({'live' if current.is_open else 'stale'} holder)"
            )

        self._guests.pop(connection.conn_id, None)
        self._host = connection
        self._host_peer_id = peer_id
        return replaced

    def add_client(self, connection: Connection) -> None:
        """
        Add a connection to the guest set.

        Raises:
            RoomFull: If the guest set is already at capacity.
        """
        if connection.conn_id in self._guests:
            return
        if len(self._guests) >= self.max_guests:
            raise RoomFull(f"Room '{self.room_id}' is full ({self.max_guests} guests)")
        if self._host is not None and self._host.conn_id == connection.conn_id:
            self._host = None
            self._host_peer_id = None
        self._guests[connection.conn_id] = connection

    def remove(self, connection: Connection) -> Role | None:
        """
        Remove a connection whether it is host or guest.

        Returns:
            The role the connection held, or None if it was not a member.
        """
        conn_id = connection.conn_id
        if self._host is not None and self._host.conn_id == conn_id:
            self._host = None
            self._host_peer_id = None
            return Role.HOST
        if self._guests.pop(conn_id, None) is not None:
            return Role.CLIENT
        return None

    def to_summary(self, host_type: str | None = None) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "hostType": host_type,
            "hasHost": self.has_live_host,
            "guestCount": self.guest_count,
            "maxGuests": self.max_guests,
            "createdAt": self.created_at,
        }

    def __repr__(self) -> str:
        return f"Room({self.room_id!r}, host={self._host_peer_id!r}, guests={self.guest_count})"


class RoomManager:
    """
    Owns the room table.

    Rooms are created on first join and deleted by the caller once empty.
    """

    def __init__(self, max_room_size: int = DEFAULT_MAX_ROOM_SIZE):
        """
        Initialize the room manager.

        Args:
            max_room_size: Global ceiling on guests per room.
        """
        self._rooms: dict[str, Room] = {}
        self._max_room_size = max_room_size

    @property
    def max_room_size(self) -> int:
        return self._max_room_size

    @property
    def room_count(self) -> int:
        """Get the number of active rooms."""
        return len(self._rooms)

    @property
    def room_ids(self) -> list[str]:
        """Get list of active room IDs."""
        return list(self._rooms.keys())

    def rooms(self) -> list[Room]:
        return list(self._rooms.values())

    def clamp_capacity(self, requested: int | None) -> int:
        """Clamp a requested guest capacity into ``1..max_room_size``."""
        if requested is None:
            return self._max_room_size
        return max(1, min(int(requested), self._max_room_size))

    def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: str, max_guests: int | None = None) -> Room:
        """
        Get an existing room or create a new one.

        Args:
            room_id: The room ID, restricted to ``[A-Za-z0-9_-]{1,50}``.
            max_guests: Requested capacity, applied only at creation.

        Returns:
            The room.

        Raises:
            SignalingError: If the room id has an invalid format.
        """
        if not is_valid_room_id(room_id):
            raise SignalingError(
                "Invalid room ID format (alphanumeric, underscore, hyphen only, max 50 chars)",
                code=ErrorCode.INVALID_ROOM_ID,
            )

        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id, max_guests=self.clamp_capacity(max_guests))
            self._rooms[room_id] = room
            logger.info(f"Room created: {room_id} (max guests {room.max_guests})")
        return room

    def delete(self, room_id: str) -> bool:
        """
        Delete a room.

        Returns:
            True if the room was deleted, False if not found.
        """
        if self._rooms.pop(room_id, None) is None:
            return False
        logger.info(f"Room deleted: {room_id}")
        return True

    def delete_if_empty(self, room_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is not None and room.is_empty:
            return self.delete(room_id)
        return False

    def has_room(self, room_id: str) -> bool:
        """Check if a room exists."""
        return room_id in self._rooms


__all__ = [
    "DEFAULT_MAX_ROOM_SIZE",
    "Role",
    "HostSlotTaken",
    "RoomFull",
    "Room",
    "RoomManager",
]
