"""
sigrelay - A WebRTC signaling relay.

Peers discover each other in named rooms (one host, many clients) and
exchange opaque offers, answers and ICE candidates over WebSocket.
"""

from sigrelay.auth import TokenCapacityExceeded, TokenRecord, TokenStore
from sigrelay.config import Settings, configure_logging
from sigrelay.ratelimit import ConnectionRateLimiter, RateLimitResult, SlidingWindowRateLimiter

# Protocol message types
from sigrelay.protocol import (
    ErrorCode,
    SignalingError,
    # Client messages
    RegisterMessage,
    JoinRoomMessage,
    OfferMessage,
    AnswerMessage,
    IceCandidateMessage,
    PingMessage,
    PongMessage,
    GenericMessage,
    ClientMessage,
    # Server messages
    JoinedRoomMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    ClientReadyMessage,
    HostDisconnectedMessage,
    ErrorMessage,
    ServerMessage,
    parse_client_message,
    sanitize_input,
)

# Room management
from sigrelay.room import (
    Role,
    Room,
    RoomManager,
    HostSlotTaken,
    RoomFull,
)

# Connections and routing
from sigrelay.connection import ClientInfo, Connection, ConnectionRegistry
from sigrelay.router import MessageRouter
from sigrelay.heartbeat import HeartbeatSupervisor

# Server
from sigrelay.server import SignalingServer

__version__ = "0.1.0"

__all__ = [
    # Auth
    "TokenCapacityExceeded",
    "TokenRecord",
    "TokenStore",
    # Config
    "Settings",
    "configure_logging",
    # Rate limiting
    "ConnectionRateLimiter",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    # Protocol
    "ErrorCode",
    "SignalingError",
    "RegisterMessage",
    "JoinRoomMessage",
    "OfferMessage",
    "AnswerMessage",
    "IceCandidateMessage",
    "PingMessage",
    "PongMessage",
    "GenericMessage",
    "ClientMessage",
    "JoinedRoomMessage",
    "PeerJoinedMessage",
    "PeerLeftMessage",
    "ClientReadyMessage",
    "HostDisconnectedMessage",
    "ErrorMessage",
    "ServerMessage",
    "parse_client_message",
    "sanitize_input",
    # Room
    "Role",
    "Room",
    "RoomManager",
    "HostSlotTaken",
    "RoomFull",
    # Connections and routing
    "ClientInfo",
    "Connection",
    "ConnectionRegistry",
    "MessageRouter",
    "HeartbeatSupervisor",
    # Server
    "SignalingServer",
]
