"""In-process document store used for demos and tests."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Mapping, Sequence

from ..models import Document
from .base import StoreError
from .documents import apply_update, matches, prepare_documents, validate_filter, validate_update

DEMO_DATASETS: Mapping[str, Mapping[str, Sequence[Document]]] = {
    "sample": {
        "accounts": (
            {"_id": "acc-1", "email": "alice@example.com", "status": "active", "logins": 12},
            {"_id": "acc-2", "email": "bob@example.com", "status": "disabled", "logins": 3},
        ),
        "orders": (
            {"_id": "ord-1", "account_id": "acc-1", "total": 42.5, "currency": "EUR"},
            {"_id": "ord-2", "account_id": "acc-1", "total": 7.0, "currency": "EUR"},
            {"_id": "ord-3", "account_id": "acc-2", "total": 19.99, "currency": "USD"},
        ),
    },
}


class MemoryCluster:
    """Shared data behind every ``memory://<name>`` connection with the same name."""

    def __init__(self, name: str, datasets: Mapping[str, Mapping[str, Sequence[Document]]] | None = None) -> None:
        self.name = name
        self.databases: dict[str, dict[str, list[dict[str, Any]]]] = {}
        for database, collections in (datasets or {}).items():
            self.databases[database] = {
                collection: [copy.deepcopy(dict(document)) for document in documents]
                for collection, documents in collections.items()
            }

    @classmethod
    def demo(cls) -> MemoryCluster:
        return cls("demo", DEMO_DATASETS)


class MemoryDocumentStore:
    """Document store backed by a ``MemoryCluster``.

    Each call runs without awaiting between reading and writing the cluster, so
    individual operations are atomic within the event loop.
    """

    def __init__(self, cluster: MemoryCluster, *, default_database: str = "test") -> None:
        self._cluster = cluster
        self._default_database = default_database
        self._closed = False

    @property
    def default_database(self) -> str:
        return self._default_database

    @property
    def closed(self) -> bool:
        return self._closed

    async def list_databases(self) -> list[str]:
        await self._checkpoint()
        names = {name for name, collections in self._cluster.databases.items() if collections}
        names.add(self._default_database)
        return sorted(names)

    async def list_collections(self, database: str) -> list[str]:
        await self._checkpoint()
        return sorted(self._cluster.databases.get(database, {}))

    async def find(self, database: str, collection: str, filter: Mapping[str, Any]) -> list[dict[str, Any]]:
        await self._checkpoint()
        validate_filter(filter)
        return [
            copy.deepcopy(document)
            for document in self._documents(database, collection)
            if matches(document, filter)
        ]

    async def find_one(self, database: str, collection: str, filter: Mapping[str, Any]) -> dict[str, Any] | None:
        await self._checkpoint()
        validate_filter(filter)
        for document in self._documents(database, collection):
            if matches(document, filter):
                return copy.deepcopy(document)
        return None

    async def insert_many(self, database: str, collection: str, documents: Sequence[Document]) -> list[str]:
        await self._checkpoint()
        prepared = prepare_documents(documents)
        target = self._cluster.databases.setdefault(database, {}).setdefault(collection, [])
        existing = {repr(document["_id"]) for document in target}
        for document in prepared:
            if repr(document["_id"]) in existing:
                raise StoreError(f"Duplicate key: _id {document['_id']!r} already exists")
        target.extend(prepared)
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
        await self._checkpoint()
        validate_filter(filter)
        operators = validate_update(update)
        documents = self._documents(database, collection)
        staged: list[tuple[int, dict[str, Any]]] = []
        for index, document in enumerate(documents):
            if not matches(document, filter):
                continue
            staged.append((index, apply_update(document, operators)))
            if not many:
                break
        modified = 0
        for index, updated in staged:
            if updated != documents[index]:
                documents[index] = updated
                modified += 1
        return len(staged), modified

    async def delete(self, database: str, collection: str, filter: Mapping[str, Any], *, many: bool) -> int:
        await self._checkpoint()
        validate_filter(filter)
        documents = self._documents(database, collection)
        doomed: list[int] = []
        for index, document in enumerate(documents):
            if matches(document, filter):
                doomed.append(index)
                if not many:
                    break
        for index in reversed(doomed):
            del documents[index]
        return len(doomed)

    async def close(self) -> None:
        self._closed = True

    async def _checkpoint(self) -> None:
        if self._closed:
            raise StoreError("Connection is closed")
        await asyncio.sleep(0)
        if self._closed:
            raise StoreError("Connection is closed")

    def _documents(self, database: str, collection: str) -> list[dict[str, Any]]:
        return self._cluster.databases.get(database, {}).get(collection, [])


__all__ = ["DEMO_DATASETS", "MemoryCluster", "MemoryDocumentStore"]
