"""Tests for the FastAPI surface: /auth, /rooms, /health and the WebSocket endpoint."""

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from sigrelay.config import Settings
from sigrelay.server import AUTH_RATE_LIMIT, SignalingServer


def make_server(**overrides) -> SignalingServer:
    overrides.setdefault("heartbeat_interval", 3600)
    return SignalingServer(Settings(**overrides))


def auth_body(key: str = "secret", client_id: str = "quest-1", client_type: str = "quest") -> dict:
    return {"clientId": client_id, "clientType": client_type, "authKey": key}


@pytest.fixture
def server() -> SignalingServer:
    return make_server(auth_key="secret")


@pytest.fixture
def client(server):
    with TestClient(server.app) as test_client:
        yield test_client


class TestAuthEndpoint:
    """Test POST /auth."""

    def test_issues_token(self, client, server):
        response = client.post("/auth", json=auth_body())

        assert response.status_code == 200
        body = response.json()
        assert len(body["token"]) == 64
        assert body["expiresIn"] == server.settings.token_ttl
        assert server.tokens.validate(body["token"]).client_id == "quest-1"

    def test_wrong_key_rejected(self, client):
        response = client.post("/auth", json=auth_body(key="nope"))
        assert response.status_code == 401

    def test_missing_fields_rejected(self, client):
        response = client.post("/auth", json={"clientId": "c1"})
        assert response.status_code == 400

    def test_invalid_json_rejected(self, client):
        response = client.post("/auth", content=b"{nope", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_any_key_accepted_without_configured_key(self):
        with TestClient(make_server().app) as test_client:
            response = test_client.post("/auth", json=auth_body(key="whatever"))
        assert response.status_code == 200

    def test_capacity_exhausted(self):
        with TestClient(make_server(auth_key="secret", max_tokens=1).app) as test_client:
            assert test_client.post("/auth", json=auth_body()).status_code == 200
            response = test_client.post("/auth", json=auth_body())
        assert response.status_code == 503

    def test_rate_limited(self, client):
        for _ in range(AUTH_RATE_LIMIT):
            client.post("/auth", json=auth_body(key="nope"))

        response = client.post("/auth", json=auth_body())

        assert response.status_code == 429
        assert response.json()["retryAfter"] == 900
        assert response.headers["Retry-After"] == "900"


class TestInfoEndpoints:
    """Test GET /rooms and GET /health."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["connections"] == 0
        assert body["rooms"] == 0
        assert body["tokens"]["maxTokens"] == 10_000

    def test_rooms_empty(self, client):
        assert client.get("/rooms").json() == {"rooms": []}

    def test_rooms_lists_active_rooms(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join-room", "roomId": "lobby", "role": "host", "clientType": "quest"})
            ws.receive_json()

            rooms = client.get("/rooms").json()["rooms"]

        assert len(rooms) == 1
        assert rooms[0]["roomId"] == "lobby"
        assert rooms[0]["hostType"] == "quest"
        assert rooms[0]["hasHost"] is True
        assert rooms[0]["guestCount"] == 0
        assert rooms[0]["maxGuests"] == 10


class TestWebSocket:
    """Test the WebSocket session end to end."""

    def test_host_and_guest_session(self, client):
        with client.websocket_connect("/ws") as host:
            host.send_json({"type": "join-room", "roomId": "r1", "role": "host", "peerId": "host"})
            assert host.receive_json()["type"] == "joined-room"

            with client.websocket_connect("/ws") as guest:
                guest.send_json({"type": "join-room", "roomId": "r1", "role": "guest", "peerId": "g1"})
                joined = guest.receive_json()
                assert joined["role"] == "client"

                assert host.receive_json() == {"type": "peer-joined", "peerId": "g1", "role": "client"}
                assert host.receive_json() == {"type": "client-ready", "peerId": "g1"}

                host.send_json({"type": "offer", "sdp": "v=0", "targetPeerId": "g1"})
                offer = guest.receive_json()
                assert offer["sdp"] == "v=0"
                assert offer["sourcePeerId"] == "host"

            assert host.receive_json() == {"type": "peer-left", "peerId": "g1", "role": "client"}

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_binary_frame_rejected(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b"\x00\x01")
            reply = ws.receive_json()
            assert reply["type"] == "error"
            assert reply["code"] == "invalid_message"

    def test_invalid_json_reported(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json()["context"] == "parse"

    def test_connection_rate_limit(self):
        server = make_server(max_connections_per_ip=1)
        with TestClient(server.app) as test_client:
            with test_client.websocket_connect("/ws") as first:
                first.send_json({"type": "ping"})
                first.receive_json()

                with test_client.websocket_connect("/ws") as second:
                    with pytest.raises(WebSocketDisconnect) as exc_info:
                        second.receive_json()
        assert exc_info.value.code == 1008


class TestRequiredAuth:
    """Test WebSocket admission when tokens are mandatory."""

    def test_missing_token_closes_with_policy_violation(self):
        with TestClient(make_server(require_auth=True).app) as test_client:
            with test_client.websocket_connect("/ws") as ws:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_json()
        assert exc_info.value.code == 1008

    def test_invalid_token_closes_with_policy_violation(self):
        with TestClient(make_server(require_auth=True).app) as test_client:
            with test_client.websocket_connect("/ws?token=" + "a" * 64) as ws:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_json()
        assert exc_info.value.code == 1008

    def test_valid_token_admitted(self):
        server = make_server(require_auth=True, auth_key="secret")
        with TestClient(server.app) as test_client:
            token = test_client.post("/auth", json=auth_body()).json()["token"]

            with test_client.websocket_connect(f"/ws?token={token}") as ws:
                ws.send_json({"type": "join-room", "roomId": "r1", "role": "host"})
                assert ws.receive_json()["type"] == "joined-room"

                clients = list(server.router.registry.clients())
                assert clients[0].authenticated is True
                assert clients[0].client_type == "quest"
