"""
Liveness probing for sigrelay connections.

Every interval each connection is either terminated (it never answered
the previous probe) or marked pending and probed again, so a half-open
connection holds its room slot for at most about two intervals.
"""

from __future__ import annotations

import asyncio
import logging
import time

from .connection import ConnectionRegistry
from .protocol import CLOSE_GOING_AWAY
from .router import MessageRouter

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0


class HeartbeatSupervisor:
    """Periodically probes connections and terminates unresponsive ones."""

    def __init__(
        self,
        router: MessageRouter,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        registry: ConnectionRegistry | None = None,
    ):
        """
        Initialize the supervisor.

        Args:
            router: Router whose disconnect path runs for terminated connections.
            interval: Seconds between probes.
            registry: Registry to enumerate (defaults to the router's).
        """
        self._router = router
        self._registry = registry or router.registry
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None

    async def tick(self) -> int:
        """
        Run one probe round.

        Returns:
            Number of connections terminated.
        """
        terminated = 0
        for connection in self._registry.connections():
            if connection.closed or not connection.is_alive:
                logger.info(f"Terminating unresponsive connection {connection.conn_id}")
                await self._router.terminate(connection, CLOSE_GOING_AWAY, "heartbeat timeout")
                terminated += 1
                continue

            connection.is_alive = False
            await connection.send({"type": "ping", "timestamp": time.time()})

        return terminated

    async def start(self) -> None:
        """Start the heartbeat task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the heartbeat task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Heartbeat round failed")


__all__ = ["DEFAULT_HEARTBEAT_INTERVAL", "HeartbeatSupervisor"]
