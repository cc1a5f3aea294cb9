"""Background task that evicts idle sessions."""

from __future__ import annotations

import asyncio
import logging

from .registry import SessionRegistry

LOG = logging.getLogger(__name__)


class IdleReaper:
    """Periodically closes sessions idle for longer than ``idle_timeout``."""

    def __init__(self, registry: SessionRegistry, *, idle_timeout: float, scan_interval: float) -> None:
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        if scan_interval <= 0:
            raise ValueError("scan_interval must be positive")
        self._registry = registry
        self._idle_timeout = idle_timeout
        self._scan_interval = scan_interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> list[str]:
        """Run one scan; returns the evicted session ids."""

        now = self._registry.now()
        evicted: list[str] = []
        for entry in self._registry.snapshot():
            if now - entry.last_activity <= self._idle_timeout:
                continue
            if await self._registry.evict_if_idle(entry.session_id, self._idle_timeout):
                evicted.append(entry.session_id)
                LOG.info("Evicted idle session %s", entry.session_id)
        if evicted:
            LOG.info("Idle reaper evicted %d session(s); %d active", len(evicted), len(self._registry))
        return evicted

    def start(self) -> None:
        """Schedule the scan loop on the running event loop."""

        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name="docproxy-idle-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._scan_interval)
            try:
                await self.tick()
            except Exception:
                LOG.exception("Idle reaper scan failed")


__all__ = ["IdleReaper"]
