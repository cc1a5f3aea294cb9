"""Session registry mapping session ids to connection handles."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable
from weakref import WeakValueDictionary

from .connections import ConnectionHandle
from .errors import NoActiveSessionError, NotConnectedError

LOG = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class _Session:
    handle: ConnectionHandle
    last_activity: float


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only view of one registry entry."""

    session_id: str
    last_activity: float
    database: str
    busy: bool


class SessionRegistry:
    """Owns every live connection handle, keyed by session id.

    Mutations for one id run under that id's lock; ids never share a lock.
    Store I/O happens outside the locks, so requests for the same session are
    not serialized. A handle removed from the registry is closed exactly once,
    by whichever caller removed it.
    """

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._sessions: dict[str, _Session] = {}
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def touch(self, session_id: str) -> bool:
        """Refresh the activity timestamp; ``False`` for unknown sessions."""

        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_activity = self._clock()
            return True

    async def get(self, session_id: str) -> ConnectionHandle:
        """Return the session's handle, refreshing its timestamp."""

        async with self._lock_for(session_id):
            session = self._require(session_id)
            session.last_activity = self._clock()
            return session.handle

    @contextlib.asynccontextmanager
    async def lease(self, session_id: str) -> AsyncIterator[ConnectionHandle]:
        """Borrow the session's handle for the duration of one operation.

        The handle cannot be closed while leased; end-session and eviction
        wait for outstanding leases before closing it.
        """

        async with self._lock_for(session_id):
            session = self._require(session_id)
            session.handle.retain()
            session.last_activity = self._clock()
            handle = session.handle
        try:
            yield handle
        finally:
            handle.release()
            current = self._sessions.get(session_id)
            if current is not None and current.handle is handle:
                current.last_activity = self._clock()

    async def put(self, session_id: str, handle: ConnectionHandle) -> bool:
        """Register ``handle``; returns ``True`` if an older handle was replaced."""

        async with self._lock_for(session_id):
            previous = self._sessions.get(session_id)
            self._sessions[session_id] = _Session(handle=handle, last_activity=self._clock())
        if previous is None:
            return False
        LOG.info("Session %s reconnected; releasing previous connection", session_id)
        await previous.handle.close()
        return True

    async def remove(self, session_id: str) -> None:
        """Close the session's handle and drop the entry."""

        async with self._lock_for(session_id):
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NoActiveSessionError()
        await session.handle.close()

    async def evict_if_idle(self, session_id: str, idle_timeout: float) -> bool:
        """Remove the session if it is still idle past ``idle_timeout``.

        Re-checks the entry under its lock, so a session touched, replaced or
        removed since the caller looked is left alone.
        """

        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None or session.handle.busy:
                return False
            if self._clock() - session.last_activity <= idle_timeout:
                return False
            del self._sessions[session_id]
        await session.handle.close()
        return True

    def snapshot(self) -> tuple[SessionSnapshot, ...]:
        """Current sessions, for monitoring and the idle reaper."""

        return tuple(
            SessionSnapshot(
                session_id=session_id,
                last_activity=session.last_activity,
                database=session.handle.database,
                busy=session.handle.busy,
            )
            for session_id, session in list(self._sessions.items())
        )

    def now(self) -> float:
        return self._clock()

    async def close_all(self) -> int:
        """Remove and close every session; returns how many were closed."""

        closed = 0
        for session_id in list(self._sessions):
            try:
                await self.remove(session_id)
            except NoActiveSessionError:
                continue
            except Exception:
                LOG.exception("Failed to close session %s during shutdown", session_id)
                continue
            closed += 1
        return closed

    def _require(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotConnectedError()
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


__all__ = ["Clock", "SessionRegistry", "SessionSnapshot"]
