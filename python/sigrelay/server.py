"""
FastAPI server for sigrelay.

Provides SignalingServer, which wires the WebSocket endpoint and the
auxiliary HTTP endpoints (/auth, /rooms, /health) to the routing core
and runs the periodic background tasks.
"""

from __future__ import annotations

import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from pydantic import ValidationError

from .auth import TokenCapacityExceeded, TokenStore
from .config import Settings
from .connection import Connection
from .heartbeat import HeartbeatSupervisor
from .protocol import (
    CLOSE_POLICY_VIOLATION,
    AuthRequest,
    ErrorCode,
    ErrorMessage,
    describe_validation_error,
)
from .ratelimit import ConnectionRateLimiter, SlidingWindowRateLimiter
from .room import RoomManager
from .router import MessageRouter

logger = logging.getLogger(__name__)

# HTTP rate limits per remote address
AUTH_RATE_LIMIT = 5
AUTH_RATE_WINDOW = 15 * 60.0
API_RATE_LIMIT = 60
API_RATE_WINDOW = 60.0


class SignalingServer:
    """
    FastAPI server for the signaling relay.

    Handles:
    - WebSocket admission (rate limit, token check) and the session loop
    - Token issuance over HTTP
    - Room listing and health reporting
    - Starting and stopping the token sweep, rate limit sweeps and heartbeat
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_store: Optional[TokenStore] = None,
        connection_limiter: Optional[ConnectionRateLimiter] = None,
        router: Optional[MessageRouter] = None,
    ):
        self._settings = settings or Settings()
        s = self._settings

        self._tokens = token_store or TokenStore(
            max_tokens=s.max_tokens,
            token_ttl=s.token_ttl,
            sweep_interval=s.token_sweep_interval,
        )
        self._connection_limiter = connection_limiter or ConnectionRateLimiter(
            max_connections_per_ip=s.max_connections_per_ip,
            window=s.rate_limit_window,
        )
        self._auth_limiter = SlidingWindowRateLimiter(AUTH_RATE_LIMIT, AUTH_RATE_WINDOW)
        self._api_limiter = SlidingWindowRateLimiter(API_RATE_LIMIT, API_RATE_WINDOW)

        self._router = router or MessageRouter(
            rooms=RoomManager(max_room_size=s.max_room_size),
            max_message_size=s.max_message_size,
            bind_peer_identity=s.bind_peer_identity,
        )
        self._heartbeat = HeartbeatSupervisor(self._router, interval=s.heartbeat_interval)

        self._started_at = time.time()
        self._api_router = APIRouter()
        self._app: Optional[FastAPI] = None
        self._setup_routes()

    @property
    def app(self) -> FastAPI:
        """Get the FastAPI application with all routes configured."""
        if self._app is None:
            self._app = FastAPI(title="sigrelay", lifespan=self._lifespan)
            self._app.include_router(self._api_router)
        return self._app

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Lifespan handler for startup/shutdown events."""
        await self.start()
        yield
        await self.stop()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def router(self) -> MessageRouter:
        return self._router

    @property
    def tokens(self) -> TokenStore:
        return self._tokens

    @property
    def heartbeat(self) -> HeartbeatSupervisor:
        return self._heartbeat

    def mount(self, app: FastAPI, prefix: str = "") -> None:
        """Mount the relay routes on an existing FastAPI application."""
        self._app = app
        app.include_router(self._api_router, prefix=prefix)

    def _setup_routes(self) -> None:
        """Setup WebSocket and HTTP routes."""

        @self._api_router.websocket(self._settings.path)
        async def websocket_endpoint(websocket: WebSocket):
            await self._handle_connection(websocket)

        @self._api_router.post("/auth")
        async def issue_token(request: Request):
            return await self._handle_auth(request)

        @self._api_router.get("/rooms")
        async def list_rooms(request: Request):
            limited = self._check_rate(self._api_limiter, request, "Too many API requests, please slow down")
            if limited is not None:
                return limited
            return {"rooms": self.room_summaries()}

        @self._api_router.get("/health")
        async def health(request: Request):
            limited = self._check_rate(self._api_limiter, request, "Too many API requests, please slow down")
            if limited is not None:
                return limited
            return self.health()

    # =========================================================================
    # WebSocket
    # =========================================================================

    async def _handle_connection(self, websocket: WebSocket) -> None:
        """Admit a WebSocket connection and pump its messages into the router."""
        remote_address = websocket.client.host if websocket.client else "unknown"
        await websocket.accept()

        if not self._connection_limiter.can_connect(remote_address):
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Too many connections")
            return

        connection = Connection(websocket, remote_address)
        token = websocket.query_params.get("token")

        if token:
            record = self._tokens.validate(token)
            if record is not None:
                connection.authenticate(record)
            elif self._settings.require_auth:
                logger.warning(f"Rejected connection from {remote_address}: invalid or expired token")
                await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Invalid or expired token")
                return
        elif self._settings.require_auth:
            logger.warning(f"Rejected connection from {remote_address}: no token")
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Authentication required")
            return

        await self._router.handle_connect(connection)

        reason: Optional[str] = None
        try:
            while connection.is_open:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    reason = f"client closed ({message.get('code', 1000)})"
                    break

                text = message.get("text")
                if text is None:
                    await connection.send(ErrorMessage(
                        error="Binary frames are not supported.",
                        context="message",
                        code=ErrorCode.INVALID_MESSAGE.value,
                    ))
                    continue

                await self._router.handle_text(connection, text)
        except Exception:
            if not connection.closed:
                logger.exception(f"WebSocket error on {connection.conn_id}")
                reason = "error"
        finally:
            await self._router.handle_disconnect(connection, reason or connection.close_reason)

    # =========================================================================
    # HTTP
    # =========================================================================

    def _check_rate(
        self, limiter: SlidingWindowRateLimiter, request: Request, message: str
    ) -> Optional[JSONResponse]:
        """Return a 429 response if the caller is over the limit."""
        key = request.client.host if request.client else "unknown"
        result = limiter.check(key)
        if result.allowed:
            return None

        retry_after = round(limiter.window)
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests", "message": message, "retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    def _auth_key_matches(self, provided: Optional[str]) -> bool:
        expected = self._settings.auth_key
        if expected is None:
            return True
        return secrets.compare_digest((provided or "").encode(), expected.get_secret_value().encode())

    async def _handle_auth(self, request: Request) -> Any:
        """Issue a token for ``{clientId, clientType, authKey}``."""
        limited = self._check_rate(
            self._auth_limiter, request, "Too many authentication attempts, please try again later"
        )
        if limited is not None:
            return limited

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

        try:
            payload = AuthRequest.model_validate(body)
        except ValidationError as exc:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid request", "details": describe_validation_error(exc)},
            )

        if not self._auth_key_matches(payload.auth_key):
            logger.warning(f"Rejected token request for client {payload.client_id}: bad auth key")
            return JSONResponse(status_code=401, content={"error": "Invalid credentials"})

        try:
            token = self._tokens.issue(payload.client_id, payload.client_type)
        except TokenCapacityExceeded:
            return JSONResponse(status_code=503, content={"error": "Token limit reached, try again later"})

        logger.info(f"Issued token for client {payload.client_id} ({payload.client_type})")
        return {"token": token, "expiresIn": self._tokens.token_ttl}

    def room_summaries(self) -> list[Dict[str, Any]]:
        registry = self._router.registry
        summaries = []
        for room in self._router.rooms.rooms():
            host_type = None
            if room.host is not None:
                info = registry.get_client(room.host.conn_id)
                host_type = info.client_type if info is not None else None
            summaries.append(room.to_summary(host_type))
        return summaries

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "uptime": time.time() - self._started_at,
            **self._router.stats(),
            "tokens": self._tokens.stats(),
        }

    # =========================================================================
    # Background tasks
    # =========================================================================

    async def start(self) -> None:
        """Start background tasks."""
        if self._settings.auth_key is None:
            logger.warning(
                "No auth key configured - POST /auth issues tokens to any caller. "
                "Set SIGRELAY_AUTH_KEY for production deployments."
            )
        self._started_at = time.time()
        await self._tokens.start()
        await self._connection_limiter.start()
        await self._auth_limiter.start()
        await self._api_limiter.start()
        await self._heartbeat.start()

    async def stop(self) -> None:
        """Stop background tasks and cleanup."""
        await self._heartbeat.stop()
        await self._api_limiter.stop()
        await self._auth_limiter.stop()
        await self._connection_limiter.stop()
        await self._tokens.stop()


__all__ = [
    "AUTH_RATE_LIMIT",
    "AUTH_RATE_WINDOW",
    "API_RATE_LIMIT",
    "API_RATE_WINDOW",
    "SignalingServer",
]
