"""Executes validated operation descriptors against a connection handle."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .connections import ConnectionHandle
from .docstore import StoreError
from .errors import ArgumentShapeError, BackendError
from .models import DeleteResult, InsertResult, Operation, OperationDescriptor, UpdateResult

LOG = logging.getLogger(__name__)

QueryOutcome = Any


class OperationDispatcher:
    """Maps each allow-listed operation onto the store capability.

    Every operation is an explicit branch; no method is looked up by name.
    Store failures surface as ``BackendError`` and are never retried.
    """

    async def dispatch(self, descriptor: OperationDescriptor, handle: ConnectionHandle) -> QueryOutcome:
        store = handle.store
        database = handle.database
        collection = descriptor.collection
        operation = descriptor.operation
        arguments = descriptor.arguments
        try:
            if operation is Operation.FIND:
                return await store.find(database, collection, _filter(arguments, operation))
            if operation is Operation.FIND_ONE:
                return await store.find_one(database, collection, _filter(arguments, operation))
            if operation is Operation.INSERT_ONE:
                ids = await store.insert_many(database, collection, [_document(arguments, operation)])
                return InsertResult(inserted_ids=tuple(ids))
            if operation is Operation.INSERT_MANY:
                ids = await store.insert_many(database, collection, _documents(arguments))
                return InsertResult(inserted_ids=tuple(ids), many=True)
            if operation is Operation.UPDATE_ONE or operation is Operation.UPDATE_MANY:
                filter, update = _update_arguments(arguments, operation)
                matched, modified = await store.update(
                    database,
                    collection,
                    filter,
                    update,
                    many=operation is Operation.UPDATE_MANY,
                )
                return UpdateResult(matched_count=matched, modified_count=modified)
            if operation is Operation.DELETE_ONE or operation is Operation.DELETE_MANY:
                deleted = await store.delete(
                    database,
                    collection,
                    _filter(arguments, operation),
                    many=operation is Operation.DELETE_MANY,
                )
                return DeleteResult(deleted_count=deleted)
        except StoreError as exc:
            LOG.info("Backend rejected %s on %s.%s: %s", operation.value, database, collection, exc)
            raise BackendError(str(exc)) from exc
        raise AssertionError(f"Unhandled operation {operation!r}")


def _filter(arguments: Any, operation: Operation) -> Mapping[str, Any]:
    if not isinstance(arguments, Mapping):
        raise ArgumentShapeError(f"{operation.value} expects a filter object")
    return arguments


def _document(arguments: Any, operation: Operation) -> Mapping[str, Any]:
    if not isinstance(arguments, Mapping):
        raise ArgumentShapeError(f"{operation.value} expects a document object")
    return arguments


def _documents(arguments: Any) -> list[Mapping[str, Any]]:
    if not isinstance(arguments, list) or not arguments:
        raise ArgumentShapeError("insertMany expects a non-empty array of documents")
    if not all(isinstance(item, Mapping) for item in arguments):
        raise ArgumentShapeError("insertMany expects every element to be a document object")
    return arguments


def _update_arguments(arguments: Any, operation: Operation) -> tuple[Mapping[str, Any], Mapping[str, Any]]:
    if not isinstance(arguments, Mapping):
        raise ArgumentShapeError(f"{operation.value} expects an object with 'filter' and 'update'")
    missing = [key for key in ("filter", "update") if key not in arguments]
    if missing:
        raise ArgumentShapeError(f"{operation.value} arguments are missing {', '.join(repr(k) for k in missing)}")
    filter, update = arguments["filter"], arguments["update"]
    if not isinstance(filter, Mapping) or not isinstance(update, Mapping):
        raise ArgumentShapeError(f"{operation.value} expects 'filter' and 'update' to be objects")
    return filter, update


__all__ = ["OperationDispatcher", "QueryOutcome"]
