"""Document store that keeps collections as JSONB tables in PostgreSQL via asyncpg.

Logical databases map to PostgreSQL schemas and collections to tables shaped
``(seq bigserial, _id text primary key, doc jsonb)``. Filters are compiled to
SQL; updates are applied in Python inside a transaction so both stores share
one update implementation.
"""

from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, AsyncIterator, Mapping, Sequence

import asyncpg

from ..models import Document
from .base import StoreError
from .documents import apply_update, prepare_documents, validate_update
from .sql import Parameters, compile_filter, document_key, schema_name, table_name

LOG = logging.getLogger(__name__)

_MISSING_RELATION = (asyncpg.exceptions.UndefinedTableError, asyncpg.exceptions.InvalidSchemaNameError)


class AsyncpgDocumentStore:
    """Document store over an asyncpg connection pool owned by one session."""

    _SCHEMA_QUERY = """
        SELECT schema_name
        FROM information_schema.schemata
        WHERE schema_name NOT IN ('pg_catalog', 'information_schema')
          AND schema_name NOT LIKE 'pg\\_toast%'
          AND schema_name NOT LIKE 'pg\\_temp%'
        ORDER BY schema_name
    """

    _TABLE_QUERY = """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = $1 AND table_type = 'BASE TABLE'
        ORDER BY table_name
    """

    def __init__(self, pool: Any, *, default_database: str) -> None:
        self._pool = pool
        self._default_database = default_database
        self._closed = False

    @classmethod
    async def connect(cls, dsn: str, *, timeout: float = 5.0, max_size: int = 4) -> AsyncpgDocumentStore:
        """Open a pool for ``dsn`` and resolve its default schema."""

        try:
            pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=max_size, timeout=timeout)
        except Exception as exc:
            raise StoreError(f"Failed to connect: {exc}") from exc
        try:
            async with pool.acquire() as conn:
                schema = await conn.fetchval("SELECT current_schema()")
        except Exception as exc:
            await pool.close()
            raise StoreError(f"Failed to inspect connection: {exc}") from exc
        return cls(pool, default_database=str(schema or "public"))

    @property
    def default_database(self) -> str:
        return self._default_database

    async def list_databases(self) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(self._SCHEMA_QUERY)
        names = {str(row["schema_name"]) for row in rows}
        names.add(self._default_database)
        return sorted(names)

    async def list_collections(self, database: str) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(self._TABLE_QUERY, database)
        return [str(row["table_name"]) for row in rows]

    async def find(self, database: str, collection: str, filter: Mapping[str, Any]) -> list[dict[str, Any]]:
        return await self._select(database, collection, filter, limit=None)

    async def find_one(self, database: str, collection: str, filter: Mapping[str, Any]) -> dict[str, Any] | None:
        documents = await self._select(database, collection, filter, limit=1)
        return documents[0] if documents else None

    async def insert_many(self, database: str, collection: str, documents: Sequence[Document]) -> list[str]:
        prepared = prepare_documents(documents)
        table = table_name(database, collection)
        rows = [(document_key(document["_id"]), json.dumps(document)) for document in prepared]
        async with self._connection() as conn:
            await self._ensure_table(conn, database, table)
            try:
                async with conn.transaction():
                    await conn.executemany(f"INSERT INTO {table} (_id, doc) VALUES ($1, $2::jsonb)", rows)
            except asyncpg.exceptions.UniqueViolationError as exc:
                raise StoreError(f"Duplicate key: {exc}") from exc
        return [document["_id"] for document in prepared]

    async def update(
        self,
        database: str,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool,
    ) -> tuple[int, int]:
        operators = validate_update(update)
        table = table_name(database, collection)
        params = Parameters()
        condition = compile_filter(filter, params)
        limit = "" if many else " LIMIT 1"
        select = f"SELECT _id, doc FROM {table} WHERE {condition} ORDER BY seq{limit} FOR UPDATE"
        async with self._connection() as conn:
            try:
                async with conn.transaction():
                    rows = await conn.fetch(select, *params.values)
                    changes: list[tuple[str, str]] = []
                    for row in rows:
                        current = _decode(row["doc"])
                        updated = apply_update(current, operators)
                        if updated != current:
                            changes.append((str(row["_id"]), json.dumps(updated)))
                    if changes:
                        await conn.executemany(f"UPDATE {table} SET doc = $2::jsonb WHERE _id = $1", changes)
            except _MISSING_RELATION:
                return 0, 0
        return len(rows), len(changes)

    async def delete(self, database: str, collection: str, filter: Mapping[str, Any], *, many: bool) -> int:
        table = table_name(database, collection)
        params = Parameters()
        condition = compile_filter(filter, params)
        if many:
            statement = f"DELETE FROM {table} WHERE {condition}"
        else:
            statement = (
                f"DELETE FROM {table} WHERE _id = "
                f"(SELECT _id FROM {table} WHERE {condition} ORDER BY seq LIMIT 1)"
            )
        async with self._connection() as conn:
            try:
                status = await conn.execute(statement, *params.values)
            except _MISSING_RELATION:
                return 0
        return _affected(status)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pool.close()
        except Exception as exc:
            raise StoreError(f"Failed to close connection pool: {exc}") from exc

    async def _select(
        self,
        database: str,
        collection: str,
        filter: Mapping[str, Any],
        *,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        table = table_name(database, collection)
        params = Parameters()
        condition = compile_filter(filter, params)
        statement = f"SELECT doc FROM {table} WHERE {condition} ORDER BY seq"
        if limit is not None:
            statement += f" LIMIT {int(limit)}"
        async with self._connection() as conn:
            try:
                rows = await conn.fetch(statement, *params.values)
            except _MISSING_RELATION:
                return []
        return [_decode(row["doc"]) for row in rows]

    async def _ensure_table(self, conn: Any, database: str, table: str) -> None:
        await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {schema_name(database)}")
        await conn.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "seq bigserial, _id text PRIMARY KEY, doc jsonb NOT NULL)"
        )

    @contextlib.asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        if self._closed:
            raise StoreError("Connection is closed")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except StoreError:
            raise
        except Exception as exc:
            LOG.debug("Store operation failed", exc_info=True)
            raise StoreError(str(exc)) from exc


def _decode(raw: object) -> dict[str, Any]:
    if isinstance(raw, str):
        return json.loads(raw)
    return dict(raw)  # type: ignore[call-overload]


def _affected(status: str) -> int:
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


__all__ = ["AsyncpgDocumentStore"]
