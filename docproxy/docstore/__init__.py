"""Backing document stores and the semantics they share."""

from __future__ import annotations

from .base import DocumentStore, StoreError
from .memory import DEMO_DATASETS, MemoryCluster, MemoryDocumentStore
from .postgres import AsyncpgDocumentStore

__all__ = [
    "AsyncpgDocumentStore",
    "DEMO_DATASETS",
    "DocumentStore",
    "MemoryCluster",
    "MemoryDocumentStore",
    "StoreError",
]
