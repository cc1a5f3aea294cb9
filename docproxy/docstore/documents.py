"""Filter and update semantics shared by every document store.

Filters are mappings of dotted field paths to either a literal (equality) or
an operator object such as ``{"$gt": 3}``. ``$and``/``$or`` combine lists of
filters at the top level. Updates must be operator documents built from
``$set``, ``$unset`` and ``$inc``.
"""

from __future__ import annotations

import copy
from typing import Any, Mapping, Sequence
from uuid import uuid4

from .base import StoreError

COMPARISON_OPERATORS = frozenset({"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists"})
LOGICAL_OPERATORS = frozenset({"$and", "$or"})
UPDATE_OPERATORS = frozenset({"$set", "$unset", "$inc"})

_MISSING = object()


def new_document_id() -> str:
    return uuid4().hex


def prepare_documents(documents: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Copy documents, assigning an ``_id`` where one is missing."""

    prepared: list[dict[str, Any]] = []
    for document in documents:
        if not isinstance(document, Mapping):
            raise StoreError("Documents must be objects")
        item = copy.deepcopy(dict(document))
        if "_id" not in item:
            item["_id"] = new_document_id()
        elif not isinstance(item["_id"], (str, int)) or isinstance(item["_id"], bool):
            raise StoreError("_id must be a string or an integer")
        prepared.append(item)
    ids = [item["_id"] for item in prepared]
    if len(set(map(repr, ids))) != len(ids):
        raise StoreError("Duplicate _id in inserted documents")
    return prepared


def validate_filter(filter: Any) -> Mapping[str, Any]:
    """Reject filters the stores cannot evaluate."""

    if not isinstance(filter, Mapping):
        raise StoreError("Filter must be an object")
    for key, value in filter.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, list) or not value:
                raise StoreError(f"{key} expects a non-empty array of filters")
            for clause in value:
                validate_filter(clause)
        elif key.startswith("$"):
            raise StoreError(f"Unknown filter operator '{key}'")
        elif _is_operator_object(value):
            for op, operand in value.items():
                if op not in COMPARISON_OPERATORS:
                    raise StoreError(f"Unknown filter operator '{op}'")
                if op in ("$in", "$nin") and not isinstance(operand, list):
                    raise StoreError(f"{op} expects an array")
    return filter


def validate_update(update: Any) -> Mapping[str, Mapping[str, Any]]:
    """Reject replacement documents and unknown update operators."""

    if not isinstance(update, Mapping) or not update:
        raise StoreError("Update must be a non-empty object")
    for op, fields in update.items():
        if op not in UPDATE_OPERATORS:
            raise StoreError(f"Update must use operators {sorted(UPDATE_OPERATORS)}, got '{op}'")
        if not isinstance(fields, Mapping):
            raise StoreError(f"{op} expects an object")
        if op == "$inc":
            for path, amount in fields.items():
                if not _is_number(amount):
                    raise StoreError(f"$inc value for '{path}' must be a number")
        for path in fields:
            if path == "_id" or path.startswith("_id."):
                raise StoreError("_id cannot be updated")
    return update


def matches(document: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    """Evaluate ``filter`` against ``document``."""

    for key, expected in filter.items():
        if key == "$and":
            if not all(matches(document, clause) for clause in expected):
                return False
        elif key == "$or":
            if not any(matches(document, clause) for clause in expected):
                return False
        else:
            actual = lookup(document, key)
            if _is_operator_object(expected):
                if not all(_compare(op, actual, operand) for op, operand in expected.items()):
                    return False
            elif not _equals(actual, expected):
                return False
    return True


def apply_update(document: Mapping[str, Any], update: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    """Return a copy of ``document`` with ``update`` applied."""

    result = copy.deepcopy(dict(document))
    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                _assign(result, path, copy.deepcopy(value))
            elif op == "$unset":
                _remove(result, path)
            elif op == "$inc":
                current = lookup(result, path)
                if current is _MISSING:
                    current = 0
                if not _is_number(current):
                    raise StoreError(f"Cannot apply $inc to non-numeric field '{path}'")
                _assign(result, path, current + value)
    return result


def lookup(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns ``_MISSING`` when absent."""

    current: Any = document
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _assign(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def _remove(document: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = document
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if current is None:
            return
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def _is_operator_object(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(str(key).startswith("$") for key in value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return any(_equals(item, expected) for item in actual)
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _ordered(actual: Any, operand: Any) -> bool:
    if _is_number(actual) and _is_number(operand):
        return True
    return isinstance(actual, str) and isinstance(operand, str)


def _compare(op: str, actual: Any, operand: Any) -> bool:
    if op == "$eq":
        return _equals(actual, operand)
    if op == "$ne":
        return not _equals(actual, operand)
    if op == "$exists":
        return (actual is not _MISSING) == bool(operand)
    if op == "$in":
        return any(_equals(actual, item) for item in operand)
    if op == "$nin":
        return not any(_equals(actual, item) for item in operand)
    if not _ordered(actual, operand):
        return False
    if op == "$gt":
        return actual > operand
    if op == "$gte":
        return actual >= operand
    if op == "$lt":
        return actual < operand
    if op == "$lte":
        return actual <= operand
    raise StoreError(f"Unknown filter operator '{op}'")


__all__ = [
    "COMPARISON_OPERATORS",
    "LOGICAL_OPERATORS",
    "UPDATE_OPERATORS",
    "apply_update",
    "lookup",
    "matches",
    "new_document_id",
    "prepare_documents",
    "validate_filter",
    "validate_update",
]
