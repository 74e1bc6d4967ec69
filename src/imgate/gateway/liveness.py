"""Connection liveness: periodic probe, reap connections that missed the last one."""

from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from imgate.core.constants import DEFAULT_HEARTBEAT_INTERVAL
from imgate.gateway.registry import SessionRegistry


class LivenessMonitor:
    """Every interval: terminate connections that did not answer, probe the rest.

    A connection that stops answering is therefore released within two
    intervals of its last pong.
    """

    def __init__(self, registry: SessionRegistry, *, interval: float = DEFAULT_HEARTBEAT_INTERVAL) -> None:
        self._registry = registry
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> list[str]:
        """Run one round; returns the ids of reaped connections."""
        reaped: list[str] = []
        for conn in self._registry.connections():
            if not conn.alive:
                logger.info("Terminating unresponsive client {}", conn.id)
                await conn.terminate()
                await self._registry.release(conn)
                reaped.append(conn.id)
                continue
            await conn.probe()
        return reaped

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.exception("Liveness sweep failed: {}", exc)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Liveness monitor started (interval {}s)", self.interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
