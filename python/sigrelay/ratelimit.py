"""
Sliding-window rate limiting keyed by remote address.

Each key keeps the timestamps of its admitted attempts inside the
trailing window; every check recomputes the active subset.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONNECTIONS_PER_IP = 10
DEFAULT_CONNECTION_WINDOW = 60.0


@dataclass
class RateLimitResult:
    """Outcome of a single rate limit check."""

    allowed: bool
    remaining: int
    retry_after: float = 0.0


class SlidingWindowRateLimiter:
    """Admits at most ``max_requests`` per ``window`` seconds for each key."""

    def __init__(
        self,
        max_requests: int,
        window: float,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def check(self, key: str) -> RateLimitResult:
        """Check a key and record the attempt if admitted."""
        now = self._clock()
        active = [t for t in self._hits.get(key, ()) if now - t < self.window]

        if len(active) >= self.max_requests:
            self._hits[key] = active
            retry_after = max(0.0, self.window - (now - active[0]))
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)

        active.append(now)
        self._hits[key] = active
        return RateLimitResult(allowed=True, remaining=self.max_requests - len(active))

    def is_allowed(self, key: str) -> bool:
        return self.check(key).allowed

    def sweep(self) -> int:
        """
        Prune expired timestamps and forget keys with an empty window.

        Returns:
            Number of keys removed.
        """
        now = self._clock()
        removed = 0
        for key in list(self._hits):
            active = [t for t in self._hits[key] if now - t < self.window]
            if active:
                self._hits[key] = active
            else:
                del self._hits[key]
                removed += 1
        return removed

    def tracked_keys(self) -> int:
        return len(self._hits)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)

    async def start(self) -> None:
        """Start the periodic sweep, one pass per window."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.window)
            try:
                removed = self.sweep()
                if removed:
                    logger.debug(f"Pruned {removed} idle rate limit windows")
            except Exception:
                logger.exception("Rate limit sweep failed")


class ConnectionRateLimiter(SlidingWindowRateLimiter):
    """Per-address admission control for new WebSocket connections."""

    def __init__(
        self,
        max_connections_per_ip: int = DEFAULT_MAX_CONNECTIONS_PER_IP,
        window: float = DEFAULT_CONNECTION_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(max_connections_per_ip, window, clock)

    def can_connect(self, remote_address: str) -> bool:
        allowed = self.is_allowed(remote_address)
        if not allowed:
            logger.warning(f"Connection rate limit exceeded for {remote_address}")
        return allowed


__all__ = [
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "ConnectionRateLimiter",
]
