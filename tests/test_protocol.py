"""Tests for message parsing, sanitization and serialization."""

import pytest
from pydantic import ValidationError

from sigrelay.protocol import (
    MAX_NESTING_DEPTH,
    ErrorMessage,
    GenericMessage,
    IceCandidateMessage,
    JoinedRoomMessage,
    JoinRoomMessage,
    OfferMessage,
    RegisterMessage,
    is_valid_peer_id,
    is_valid_room_id,
    parse_client_message,
    sanitize_envelope,
    sanitize_input,
)


class TestParseClientMessage:
    """Test typed parsing of inbound messages."""

    def test_join_room(self):
        message = parse_client_message(
            {"type": "join-room", "roomId": "lobby", "role": "host", "peerId": "quest-1", "maxConnections": 4}
        )
        assert isinstance(message, JoinRoomMessage)
        assert message.room_id == "lobby"
        assert message.peer_id == "quest-1"
        assert message.max_connections == 4

    def test_guest_role_is_client(self):
        message = parse_client_message({"type": "join-room", "roomId": "lobby", "role": "Guest"})
        assert message.role == "client"

    def test_unknown_role_rejected(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "join-room", "roomId": "lobby", "role": "admin"})

    def test_register(self):
        message = parse_client_message(
            {"type": "register", "peerId": "p1", "clientType": "quest", "roomId": "lobby"}
        )
        assert isinstance(message, RegisterMessage)
        assert message.client_type == "quest"

    def test_offer_keeps_extra_fields(self):
        message = parse_client_message(
            {"type": "offer", "sdp": "v=0", "targetPeerId": "p2", "sessionId": 7}
        )
        assert isinstance(message, OfferMessage)
        assert message.target_peer_id == "p2"
        assert message.model_extra["sessionId"] == 7

    def test_oversized_candidate_rejected(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "ice-candidate", "candidate": "c" * 1001})

    def test_candidate_at_limit_accepted(self):
        message = parse_client_message({"type": "ice-candidate", "candidate": "c" * 1000})
        assert isinstance(message, IceCandidateMessage)

    def test_unknown_type_is_generic(self):
        message = parse_client_message({"type": "cursor-move", "x": 1})
        assert isinstance(message, GenericMessage)
        assert message.type == "cursor-move"

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"type": ""},
            {"type": 5},
            {"type": "t" * 51},
        ],
    )
    def test_bad_envelope_rejected(self, data):
        with pytest.raises(ValidationError):
            parse_client_message(data)

    @pytest.mark.parametrize("data", [[], "join-room", None, 3])
    def test_non_object_rejected(self, data):
        with pytest.raises(ValueError):
            parse_client_message(data)


class TestSanitization:
    """Test script and tag stripping."""

    def test_strips_script_block(self):
        assert sanitize_input("hi<script>alert(1)</script>there") == "hithere"

    def test_strips_tags(self):
        assert sanitize_input("<b>bold</b>") == "bold"

    def test_non_strings_untouched(self):
        assert sanitize_input(5) == 5
        assert sanitize_input(None) is None

    def test_opaque_fields_untouched(self):
        sdp = "v=0\r\na=<candidate>\r\n"
        result = sanitize_envelope({"type": "offer", "sdp": sdp, "label": "<i>x</i>"})
        assert result["sdp"] == sdp
        assert result["label"] == "x"


class TestIdentifiers:
    """Test room and peer id formats."""

    @pytest.mark.parametrize("value", ["a", "Room_1", "abc-DEF", "x" * 50])
    def test_valid_room_ids(self, value):
        assert is_valid_room_id(value)

    @pytest.mark.parametrize("value", ["", "x" * 51, "room 1", "room/1", "room\n", None, 12])
    def test_invalid_room_ids(self, value):
        assert not is_valid_room_id(value)

    def test_peer_id_allows_longer_values(self):
        assert is_valid_peer_id("p" * 100)
        assert not is_valid_peer_id("p" * 101)


class TestSerialization:
    """Test camelCase wire output."""

    def test_joined_room_uses_camel_case(self):
        wire = JoinedRoomMessage(room_id="r1", peer_id="p1", role="host", is_host=True).to_wire()
        assert wire == {"type": "joined-room", "roomId": "r1", "peerId": "p1", "role": "host", "isHost": True}

    def test_error_omits_missing_context(self):
        wire = ErrorMessage(error="boom", code="internal_error").to_wire()
        assert wire == {"type": "error", "error": "boom", "code": "internal_error"}


class TestNestedSanitization:
    """Test sanitization below the top level."""

    def test_nested_strings_cleaned(self):
        result = sanitize_envelope({"type": "chat", "meta": {"tags": ["<b>a</b>", {"x": "<i>b</i>"}]}})
        assert result["meta"] == {"tags": ["a", {"x": "b"}]}

    def test_nested_opaque_fields_untouched(self):
        result = sanitize_envelope({"type": "batch", "items": [{"sdp": "<raw>"}]})
        assert result["items"] == [{"sdp": "<raw>"}]

    def test_depth_limit(self):
        data = {"type": "chat"}
        inner = data
        for _ in range(MAX_NESTING_DEPTH + 1):
            inner["next"] = {}
            inner = inner["next"]
        with pytest.raises(ValueError):
            sanitize_envelope(data)

    def test_target_peer_id_pattern_enforced(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "offer", "sdp": "v=0", "targetPeerId": "a b"})
