"""Store capability interface implemented by the document backends."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..models import Document


class StoreError(RuntimeError):
    """Raised when a store cannot connect or rejects an operation."""


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol implemented by document stores.

    Every method except ``default_database`` may suspend on I/O. Databases and
    collections are created lazily by writes; reading a missing collection
    yields no documents.
    """

    @property
    def default_database(self) -> str:
        """Logical database selected right after connecting."""

    async def list_databases(self) -> list[str]:
        """Return logical database names in sorted order."""

    async def list_collections(self, database: str) -> list[str]:
        """Return collection names of ``database`` in sorted order."""

    async def find(self, database: str, collection: str, filter: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Return every matching document, in insertion order."""

    async def find_one(self, database: str, collection: str, filter: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return the first matching document or ``None``."""

    async def insert_many(self, database: str, collection: str, documents: Sequence[Document]) -> list[str]:
        """Insert documents and return their ``_id`` values."""

    async def update(
        self,
        database: str,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool,
    ) -> tuple[int, int]:
        """Apply ``update`` and return ``(matched, modified)`` counts."""

    async def delete(self, database: str, collection: str, filter: Mapping[str, Any], *, many: bool) -> int:
        """Delete matching documents and return how many were removed."""

    async def close(self) -> None:
        """Release the underlying connection(s)."""


__all__ = ["DocumentStore", "StoreError"]
