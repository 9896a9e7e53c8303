"""
WebSocket protocol message types for sigrelay.

Defines all client and server message types using Pydantic models
for validation and serialization. Field names are camelCase on the wire.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

# Maximum lengths for string fields to prevent DoS
MAX_TYPE_LENGTH = 50
MAX_ROOM_ID_LENGTH = 50
MAX_PEER_ID_LENGTH = 100
MAX_SDP_LENGTH = 100_000
MAX_CANDIDATE_LENGTH = 1000
MAX_CLIENT_TYPE_LENGTH = 100

ROOM_ID_PATTERN = rf"^[A-Za-z0-9_-]{{1,{MAX_ROOM_ID_LENGTH}}}$"
PEER_ID_PATTERN = rf"^[A-Za-z0-9_-]{{1,{MAX_PEER_ID_LENGTH}}}$"

_ROOM_ID_RE = re.compile(ROOM_ID_PATTERN)
_PEER_ID_RE = re.compile(PEER_ID_PATTERN)

# Payload fields relayed verbatim, never sanitized
OPAQUE_FIELDS = frozenset({"sdp", "candidate"})

# Types the router answers itself instead of relaying
CONTROL_TYPES = frozenset({"ping", "pong"})

# Deepest object/array nesting accepted in an inbound message
MAX_NESTING_DEPTH = 32

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008


# =============================================================================
# Sanitization
# =============================================================================


_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def sanitize_input(value: Any) -> Any:
    """Strip script blocks and HTML tags from a string; other values pass through."""
    if not isinstance(value, str):
        return value
    return _TAG_RE.sub("", _SCRIPT_RE.sub("", value)).strip()


def _sanitize_value(value: Any, depth: int) -> Any:
    if depth > MAX_NESTING_DEPTH:
        raise ValueError("Message is nested too deeply")
    if isinstance(value, dict):
        return {
            key: item if key in OPAQUE_FIELDS else _sanitize_value(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_sanitize_value(item, depth + 1) for item in value]
    return sanitize_input(value)


def sanitize_envelope(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Sanitize every string in an inbound envelope, nested ones included.

    ``sdp`` and ``candidate`` values are left untouched at any depth.

    Raises:
        ValueError: If the message nests deeper than ``MAX_NESTING_DEPTH``.
    """
    return _sanitize_value(data, 0)


def is_valid_room_id(value: Any) -> bool:
    return isinstance(value, str) and _ROOM_ID_RE.fullmatch(value) is not None


def is_valid_peer_id(value: Any) -> bool:
    return isinstance(value, str) and _PEER_ID_RE.fullmatch(value) is not None


# =============================================================================
# Error Codes
# =============================================================================


class ErrorCode(str, Enum):
    """Standard error codes for the protocol."""

    INVALID_MESSAGE = "invalid_message"
    INVALID_ROOM_ID = "invalid_room_id"
    INVALID_PEER_ID = "invalid_peer_id"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    NOT_JOINED = "not_joined"
    HOST_SLOT_TAKEN = "host_slot_taken"
    ROOM_FULL = "room_full"
    TARGET_NOT_FOUND = "target_not_found"
    PEER_ID_TAKEN = "peer_id_taken"
    INTERNAL_ERROR = "internal_error"


class SignalingError(Exception):
    """
    A failure scoped to a single inbound message.

    The router reports it to the offending connection as an ``error``
    message and keeps the connection open.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        context: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context


# =============================================================================
# Base model
# =============================================================================


class WireModel(BaseModel):
    """Base for all messages: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Client Message Types
# =============================================================================


class Envelope(WireModel):
    """Structural check shared by every inbound message."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str = Field(..., min_length=1, max_length=MAX_TYPE_LENGTH)


class RegisterMessage(WireModel):
    """Legacy join: ``clientType`` decides the role."""

    type: Literal["register"] = "register"
    peer_id: str = Field(..., pattern=PEER_ID_PATTERN)
    client_type: str = Field(..., min_length=1, max_length=MAX_CLIENT_TYPE_LENGTH)
    room_id: str = Field(..., pattern=ROOM_ID_PATTERN)


class JoinRoomMessage(WireModel):
    """Client requests to join a room as host or client."""

    type: Literal["join-room"] = "join-room"
    room_id: str = Field(..., pattern=ROOM_ID_PATTERN)
    role: str = Field(..., min_length=1, max_length=MAX_TYPE_LENGTH)
    peer_id: Optional[str] = Field(None, pattern=PEER_ID_PATTERN)
    max_connections: Optional[int] = Field(None, ge=1)
    client_type: Optional[str] = Field(None, max_length=MAX_CLIENT_TYPE_LENGTH)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        role = v.lower()
        if role == "guest":
            role = "client"
        if role not in ("host", "client"):
            raise ValueError("role must be 'host' or 'client'")
        return role


class RoutableMessage(WireModel):
    """A signaling payload that may be unicast with ``targetPeerId``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    target_peer_id: Optional[str] = Field(None, pattern=PEER_ID_PATTERN)


class OfferMessage(RoutableMessage):
    type: Literal["offer"] = "offer"
    sdp: str = Field(..., min_length=1, max_length=MAX_SDP_LENGTH)


class AnswerMessage(RoutableMessage):
    type: Literal["answer"] = "answer"
    sdp: str = Field(..., min_length=1, max_length=MAX_SDP_LENGTH)


class IceCandidateMessage(RoutableMessage):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: str = Field(..., min_length=1, max_length=MAX_CANDIDATE_LENGTH)


class PingMessage(WireModel):
    """Client sends ping to check the relay is alive."""

    type: Literal["ping"] = "ping"
    timestamp: Optional[float] = None


class PongMessage(WireModel):
    """Heartbeat acknowledgement (client) or ping reply (server)."""

    type: Literal["pong"] = "pong"
    timestamp: Optional[float] = None


class GenericMessage(Envelope):
    """Any other type: broadcast to the room as-is."""


# Union of all client message types
ClientMessage = Union[
    RegisterMessage,
    JoinRoomMessage,
    OfferMessage,
    AnswerMessage,
    IceCandidateMessage,
    PingMessage,
    PongMessage,
    GenericMessage,
]

SIGNALING_TYPES = frozenset({"offer", "answer", "ice-candidate"})


# =============================================================================
# Server Message Types
# =============================================================================


class JoinedRoomMessage(WireModel):
    """Server confirms the connection joined a room."""

    type: Literal["joined-room"] = "joined-room"
    room_id: str
    peer_id: str
    role: str
    is_host: bool


class PeerJoinedMessage(WireModel):
    type: Literal["peer-joined"] = "peer-joined"
    peer_id: str
    role: str


class PeerLeftMessage(WireModel):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str
    role: str


class ClientReadyMessage(WireModel):
    """Sent to the host when a client joins its room."""

    type: Literal["client-ready"] = "client-ready"
    peer_id: str


class HostDisconnectedMessage(WireModel):
    type: Literal["host-disconnected"] = "host-disconnected"


class ErrorMessage(WireModel):
    """Server sends an error message."""

    type: Literal["error"] = "error"
    error: str
    context: Optional[str] = None
    code: str


# Union of all server message types
ServerMessage = Union[
    JoinedRoomMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    ClientReadyMessage,
    HostDisconnectedMessage,
    ErrorMessage,
    PongMessage,
]


# =============================================================================
# HTTP Request Models
# =============================================================================


class AuthRequest(WireModel):
    """Body of POST /auth."""

    client_id: str = Field(..., min_length=1, max_length=MAX_CLIENT_TYPE_LENGTH)
    client_type: str = Field(..., min_length=1, max_length=MAX_CLIENT_TYPE_LENGTH)
    auth_key: Optional[str] = Field(None, max_length=1024)


# =============================================================================
# Message Parsing
# =============================================================================


def parse_client_message(data: Any) -> ClientMessage:
    """
    Parse a raw dictionary into a typed client message.

    Structural checks (object shape, ``type``) run before the
    type-specific model.

    Raises:
        ValidationError: If the envelope or the typed message is invalid.
        ValueError: If the payload is not an object.
    """
    if not isinstance(data, dict):
        raise ValueError("Message must be an object")

    envelope = Envelope.model_validate(data)

    type_map = {
        "register": RegisterMessage,
        "join-room": JoinRoomMessage,
        "offer": OfferMessage,
        "answer": AnswerMessage,
        "ice-candidate": IceCandidateMessage,
        "ping": PingMessage,
        "pong": PongMessage,
    }

    model = type_map.get(envelope.type, GenericMessage)
    return model.model_validate(data)


def describe_validation_error(exc: ValidationError) -> str:
    """Flatten a pydantic error into a short human-readable string."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(loc) for loc in err.get("loc", ())) or "message"
        parts.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


__all__ = [
    "CLOSE_NORMAL",
    "CLOSE_GOING_AWAY",
    "CLOSE_POLICY_VIOLATION",
    "MAX_TYPE_LENGTH",
    "MAX_SDP_LENGTH",
    "MAX_CANDIDATE_LENGTH",
    "ROOM_ID_PATTERN",
    "PEER_ID_PATTERN",
    "CONTROL_TYPES",
    "MAX_NESTING_DEPTH",
    "SIGNALING_TYPES",
    "sanitize_input",
    "sanitize_envelope",
    "is_valid_room_id",
    "is_valid_peer_id",
    "ErrorCode",
    "SignalingError",
    "WireModel",
    # Client messages
    "Envelope",
    "RegisterMessage",
    "JoinRoomMessage",
    "RoutableMessage",
    "OfferMessage",
    "AnswerMessage",
    "IceCandidateMessage",
    "PingMessage",
    "PongMessage",
    "GenericMessage",
    "ClientMessage",
    # Server messages
    "JoinedRoomMessage",
    "PeerJoinedMessage",
    "PeerLeftMessage",
    "ClientReadyMessage",
    "HostDisconnectedMessage",
    "ErrorMessage",
    "ServerMessage",
    # HTTP
    "AuthRequest",
    # Parsing
    "parse_client_message",
    "describe_validation_error",
]
