"""
In-memory token store for connection admission.

Tokens are opaque random hex strings with a fixed TTL. Expired tokens
are dropped lazily on validation, by an hourly sweep, and by a forced
sweep when the store is full.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_LENGTH = TOKEN_BYTES * 2
DEFAULT_MAX_TOKENS = 10_000
DEFAULT_TOKEN_TTL = 24 * 60 * 60.0
DEFAULT_SWEEP_INTERVAL = 60 * 60.0
MAX_ID_LENGTH = 100

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class TokenCapacityExceeded(Exception):
    """Raised when no token slot can be freed for a new issuance."""


def sanitize_id(value: Any) -> str:
    """Strip everything outside ``[A-Za-z0-9_-]`` and cap the length."""
    if not isinstance(value, str):
        return ""
    return _UNSAFE_ID_CHARS.sub("", value)[:MAX_ID_LENGTH]


@dataclass
class TokenRecord:
    """
    Bookkeeping for one issued token.

    Callers get the live record back from ``validate``; only the store
    updates ``last_used``.
    """

    client_id: str
    client_type: str
    created_at: float
    expires_at: float
    last_used: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "clientType": self.client_type,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "lastUsed": self.last_used,
        }


class TokenStore:
    """
    Issues and validates short-lived authorization tokens.

    The live-token count never exceeds ``max_tokens``: issuance at capacity
    first sweeps expired records and fails with ``TokenCapacityExceeded``
    if that frees nothing.
    """

    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        token_ttl: float = DEFAULT_TOKEN_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the token store.

        Args:
            max_tokens: Maximum number of live tokens.
            token_ttl: Token lifetime in seconds.
            sweep_interval: Seconds between background sweeps.
            clock: Time source, seconds since the epoch.
        """
        self._tokens: dict[str, TokenRecord] = {}
        self._max_tokens = max_tokens
        self._token_ttl = token_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sweep_task: asyncio.Task | None = None

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def token_ttl(self) -> float:
        return self._token_ttl

    def __len__(self) -> int:
        return len(self._tokens)

    def issue(self, client_id: Any, client_type: Any) -> str:
        """
        Issue a new token.

        Args:
            client_id: Caller-supplied client identifier (sanitized).
            client_type: Caller-supplied client type (sanitized).

        Returns:
            The token value (64 hex characters).

        Raises:
            TokenCapacityExceeded: If the store is full of live tokens.
        """
        if len(self._tokens) >= self._max_tokens:
            self.sweep()
            if len(self._tokens) >= self._max_tokens:
                logger.warning(f"Token limit reached ({self._max_tokens})")
                raise TokenCapacityExceeded("Token limit reached")

        token = secrets.token_hex(TOKEN_BYTES)
        now = self._clock()
        self._tokens[token] = TokenRecord(
            client_id=sanitize_id(client_id),
            client_type=sanitize_id(client_type),
            created_at=now,
            expires_at=now + self._token_ttl,
            last_used=now,
        )
        return token

    def validate(self, token: Any) -> TokenRecord | None:
        """
        Validate a token.

        Returns:
            The token record, or None if the token is malformed, unknown
            or expired. Expired records are removed.
        """
        if not isinstance(token, str) or len(token) != TOKEN_LENGTH:
            return None

        record = self._tokens.get(token)
        if record is None:
            return None

        now = self._clock()
        if record.is_expired(now):
            del self._tokens[token]
            return None

        record.last_used = now
        return record

    def revoke(self, token: str) -> bool:
        """Remove a token. Returns True if it existed."""
        return self._tokens.pop(token, None) is not None

    def sweep(self) -> int:
        """
        Remove all expired tokens.

        Returns:
            Number of tokens removed.
        """
        now = self._clock()
        expired = [token for token, record in self._tokens.items() if record.is_expired(now)]
        for token in expired:
            del self._tokens[token]

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired tokens")
        return len(expired)

    def clear(self) -> None:
        self._tokens.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "totalTokens": len(self._tokens),
            "maxTokens": self._max_tokens,
            "tokenTTL": self._token_ttl,
        }

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the sweep task and drop every token."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Token sweep failed")


__all__ = [
    "TOKEN_LENGTH",
    "TokenCapacityExceeded",
    "TokenRecord",
    "TokenStore",
    "sanitize_id",
]
