"""Connection handles wrapping one live document store per session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

from .config import AppConfig
from .docstore import AsyncpgDocumentStore, DocumentStore, MemoryCluster, MemoryDocumentStore, StoreError
from .errors import ConnectFailureError, NotConnectedError

LOG = logging.getLogger(__name__)

POSTGRES_SCHEMES = frozenset({"postgres", "postgresql"})
MEMORY_SCHEME = "memory"

Connector = Callable[[str], Awaitable["ConnectionHandle"]]


class ConnectionHandle:
    """Live store connection plus the currently selected logical database.

    Operations run inside ``lease()``. ``close()`` refuses new leases, waits for
    in-flight ones to finish and then closes the store exactly once.
    """

    def __init__(self, store: DocumentStore, *, label: str = "") -> None:
        self._store = store
        self._label = label
        self._database = store.default_database
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._closing = False

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def label(self) -> str:
        return self._label

    @property
    def database(self) -> str:
        return self._database

    @property
    def closed(self) -> bool:
        return self._closing

    @property
    def busy(self) -> bool:
        return self._in_flight > 0

    def select(self, database: str) -> None:
        """Switch the active logical database; existence is not checked."""

        self._database = database

    def retain(self) -> None:
        if self._closing:
            raise NotConnectedError()
        self._in_flight += 1
        self._drained.clear()

    def release(self) -> None:
        if self._in_flight <= 0:
            raise RuntimeError(f"Connection {self._label} released more often than retained")
        self._in_flight -= 1
        if self._in_flight == 0:
            self._drained.set()

    @contextlib.asynccontextmanager
    async def lease(self) -> AsyncIterator[ConnectionHandle]:
        self.retain()
        try:
            yield self
        finally:
            self.release()

    async def close(self) -> bool:
        """Close the store; returns ``False`` if it was already closed."""

        if self._closing:
            LOG.info("Connection %s already closed; ignoring", self._label)
            return False
        self._closing = True
        await self._drained.wait()
        try:
            await self._store.close()
        except Exception as exc:
            LOG.warning("Error while closing connection %s: %s", self._label, exc)
        return True


class StoreConnector:
    """Opens connection handles for connection URIs.

    ``memory://<cluster>[/<database>]`` selects an in-process cluster owned by
    this connector; ``postgres://`` and ``postgresql://`` open an asyncpg pool.
    """

    def __init__(self, config: AppConfig, *, clusters: dict[str, MemoryCluster] | None = None) -> None:
        self._config = config
        self._clusters = clusters if clusters is not None else {"demo": MemoryCluster.demo()}

    @property
    def clusters(self) -> dict[str, MemoryCluster]:
        return self._clusters

    async def __call__(self, uri: str) -> ConnectionHandle:
        return await self.connect(uri)

    async def connect(self, uri: str) -> ConnectionHandle:
        if not isinstance(uri, str) or not uri.strip():
            raise ConnectFailureError("Connection string is required")
        uri = uri.strip()
        try:
            parts = urlsplit(uri)
        except ValueError as exc:
            raise ConnectFailureError(f"Malformed connection string: {exc}") from exc
        scheme = parts.scheme.lower()
        label = redact(uri)
        try:
            if scheme == MEMORY_SCHEME:
                store: DocumentStore = self._memory_store(parts.netloc, parts.path)
            elif scheme in POSTGRES_SCHEMES:
                store = await AsyncpgDocumentStore.connect(
                    uri,
                    timeout=self._config.connect_timeout,
                    max_size=self._config.pool_max_size,
                )
            else:
                raise ConnectFailureError(f"Unsupported connection scheme '{parts.scheme}'")
        except StoreError as exc:
            raise ConnectFailureError(str(exc)) from exc
        return ConnectionHandle(store, label=label)

    def _memory_store(self, netloc: str, path: str) -> MemoryDocumentStore:
        if not netloc:
            raise ConnectFailureError("memory:// connection strings need a cluster name")
        cluster = self._clusters.get(netloc)
        if cluster is None:
            cluster = MemoryCluster(netloc)
            self._clusters[netloc] = cluster
        database = path.strip("/") or "test"
        return MemoryDocumentStore(cluster, default_database=database)


def redact(uri: str) -> str:
    """Hide the password component of a connection URI for logging."""

    try:
        parts = urlsplit(uri)
        if parts.password is None:
            return uri
        host = parts.hostname or ""
        if parts.port is not None:
            host = f"{host}:{parts.port}"
    except ValueError:
        return "<malformed uri>"
    netloc = f"{parts.username}:***@{host}" if parts.username else f"***@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


__all__ = ["ConnectionHandle", "Connector", "StoreConnector", "redact"]
