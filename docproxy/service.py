"""Logical operations exposed to the transport layer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import AppConfig
from .connections import Connector, StoreConnector
from .dispatch import OperationDispatcher
from .docstore import StoreError
from .errors import ArgumentShapeError, BackendError, NotConnectedError
from .grammar import CommandParser
from .reaper import IdleReaper
from .registry import Clock, SessionRegistry

LOG = logging.getLogger(__name__)


class ProxyService:
    """Binds session ids to connections and runs commands against them.

    Every method takes the caller's session id and either returns a result or
    raises a ``ProxyError`` subclass describing the failure.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        connector: Connector | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._connector = connector or StoreConnector(self._config)
        self._registry = SessionRegistry(clock=clock) if clock is not None else SessionRegistry()
        self._parser = CommandParser(self._config)
        self._dispatcher = OperationDispatcher()
        self._reaper = IdleReaper(
            self._registry,
            idle_timeout=self._config.idle_timeout_seconds,
            scan_interval=self._config.scan_interval_seconds,
        )
        self._status_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def reaper(self) -> IdleReaper:
        return self._reaper

    def active_sessions(self) -> int:
        return len(self._registry)

    async def start(self) -> None:
        """Start background tasks (idle reaper, session count logging)."""

        self._reaper.start()
        if self._status_task is None:
            loop = asyncio.get_running_loop()
            self._status_task = loop.create_task(self._log_status(), name="docproxy-status")
        LOG.info(
            "Proxy started (idle timeout %.0fs, scan interval %.0fs)",
            self._config.idle_timeout_seconds,
            self._config.scan_interval_seconds,
        )

    async def shutdown(self) -> None:
        """Stop background tasks and close every open connection."""

        await self._reaper.stop()
        if self._status_task is not None:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
            self._status_task = None
        closed = await self._registry.close_all()
        LOG.info("Proxy stopped; closed %d session(s)", closed)

    async def connect(self, session_id: str, connection_string: str) -> dict[str, str]:
        handle = await self._connector(connection_string)
        replaced = await self._registry.put(session_id, handle)
        LOG.info(
            "Session %s connected to %s (database %s%s)",
            session_id,
            handle.label,
            handle.database,
            ", replaced previous connection" if replaced else "",
        )
        return {"message": "Connected successfully"}

    async def list_databases(self, session_id: str) -> list[str]:
        async with self._registry.lease(session_id) as handle:
            return await self._backend(handle.store.list_databases())

    async def select_database(self, session_id: str, database: str) -> dict[str, str]:
        async with self._registry.lease(session_id) as handle:
            if not isinstance(database, str) or not database.strip():
                raise ArgumentShapeError("Database name is required")
            handle.select(database)
        LOG.debug("Session %s selected database %s", session_id, database)
        return {"message": "Database selected successfully"}

    async def list_collections(self, session_id: str) -> list[str]:
        async with self._registry.lease(session_id) as handle:
            return await self._backend(handle.store.list_collections(handle.database))

    async def query(self, session_id: str, command: str) -> Any:
        if session_id not in self._registry:
            raise NotConnectedError()
        descriptor = self._parser.parse(command)
        async with self._registry.lease(session_id) as handle:
            result = await self._dispatcher.dispatch(descriptor, handle)
        if hasattr(result, "to_payload"):
            return result.to_payload()
        return result

    async def end_session(self, session_id: str) -> dict[str, str]:
        await self._registry.remove(session_id)
        LOG.info("Session %s ended", session_id)
        return {"message": "Session ended successfully"}

    async def _backend(self, awaitable: Any) -> Any:
        try:
            return await awaitable
        except StoreError as exc:
            raise BackendError(str(exc)) from exc

    async def _log_status(self) -> None:
        while True:
            await asyncio.sleep(self._config.status_log_interval_seconds)
            LOG.info("Active sessions: %d", len(self._registry))


__all__ = ["ProxyService"]
