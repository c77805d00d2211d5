"""Background eviction of idle sessions."""

from __future__ import annotations

import asyncio
import logging
import time

from sessionbridge.adapters.base import AdapterError
from sessionbridge.broker.errors import SessionNotFound
from sessionbridge.broker.registry import SessionRegistry

logger = logging.getLogger(__name__)


class IdleReaper:
    """Closes sessions that have not been used for ``idle_timeout`` seconds.

    ``last_used_at`` is refreshed when a command starts and when it ends,
    and sessions with a command in flight are never reaped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        idle_timeout: float = 1800.0,
        interval: float = 60.0,
    ) -> None:
        self._registry = registry
        self._idle_timeout = idle_timeout
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Idle reaper started (idle_timeout=%.0fs, interval=%.0fs)",
            self._idle_timeout, self._interval,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def sweep(self, now: float | None = None) -> list[str]:
        """Close every session idle for longer than the threshold."""
        now = time.time() if now is None else now
        reaped = []
        for session in self._registry:
            if session.is_running:
                continue
            if now - session.last_used_at <= self._idle_timeout:
                continue
            try:
                await self._registry.close(session.id)
            except SessionNotFound:
                continue
            except AdapterError as e:
                logger.warning("Failed to dispose stale session %s: %s", session.label, e)
            logger.info("Cleaned up stale session: %s (%s)", session.label, session.id)
            reaped.append(session.id)
        return reaped

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Idle sweep failed")
