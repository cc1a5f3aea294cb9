"""Compile document filters into parameterized PostgreSQL over a ``doc jsonb`` column."""

from __future__ import annotations

import json
from typing import Any, Mapping

from sqlglot import exp

from .base import StoreError
from .documents import validate_filter


class Parameters:
    """Accumulates positional asyncpg parameters (``$1``, ``$2`` ...)."""

    def __init__(self, initial: tuple[object, ...] = ()) -> None:
        self.values: list[object] = list(initial)

    def add(self, value: object) -> str:
        self.values.append(value)
        return f"${len(self.values)}"

    def jsonb(self, value: Any) -> str:
        return f"{self.add(json.dumps(value))}::jsonb"

    def path(self, dotted: str) -> str:
        return f"{self.add(dotted.split('.'))}::text[]"


def table_name(database: str, collection: str) -> str:
    """Render ``"database"."collection"`` with PostgreSQL quoting."""

    if not database or "\x00" in database:
        raise StoreError(f"Invalid database name {database!r}")
    return exp.table_(collection, db=database, quoted=True).sql(dialect="postgres")


def schema_name(database: str) -> str:
    if not database or "\x00" in database:
        raise StoreError(f"Invalid database name {database!r}")
    return exp.to_identifier(database, quoted=True).sql(dialect="postgres")


def document_key(document_id: object) -> str:
    """Primary-key text for an ``_id`` (keeps ``1`` and ``"1"`` distinct)."""

    return json.dumps(document_id)


def compile_filter(filter: Mapping[str, Any], params: Parameters) -> str:
    """Return a SQL boolean expression equivalent to ``documents.matches``."""

    validate_filter(filter)
    clauses: list[str] = []
    for key, expected in filter.items():
        if key == "$and":
            clauses.append("(" + " AND ".join(compile_filter(clause, params) for clause in expected) + ")")
        elif key == "$or":
            clauses.append("(" + " OR ".join(compile_filter(clause, params) for clause in expected) + ")")
        elif _is_operator_object(expected):
            field = f"(doc #> {params.path(key)})"
            for op, operand in expected.items():
                clauses.append(_compile_operator(field, op, operand, params))
        else:
            field = f"(doc #> {params.path(key)})"
            clauses.append(_equals(field, expected, params))
    if not clauses:
        return "TRUE"
    return " AND ".join(clauses)


def _compile_operator(field: str, op: str, operand: Any, params: Parameters) -> str:
    if op == "$eq":
        return _equals(field, operand, params)
    if op == "$ne":
        return f"NOT {_equals(field, operand, params)}"
    if op == "$exists":
        return f"{field} IS NOT NULL" if operand else f"{field} IS NULL"
    if op in ("$in", "$nin"):
        if not operand:
            return "FALSE" if op == "$in" else "TRUE"
        any_of = "(" + " OR ".join(_equals(field, item, params) for item in operand) + ")"
        return any_of if op == "$in" else f"NOT {any_of}"
    comparator = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}.get(op)
    if comparator is None or not _orderable(operand):
        return "FALSE"
    value = params.jsonb(operand)
    return (
        f"COALESCE(jsonb_typeof({field}) = jsonb_typeof({value}) "
        f"AND {field} {comparator} {value}, FALSE)"
    )


def _equals(field: str, expected: Any, params: Parameters) -> str:
    if expected is None:
        return f"({field} IS NULL OR {field} = 'null'::jsonb)"
    value = params.jsonb(expected)
    if isinstance(expected, list):
        return f"COALESCE({field} = {value}, FALSE)"
    return (
        f"COALESCE({field} = {value} OR (jsonb_typeof({field}) = 'array' "
        f"AND {field} @> jsonb_build_array({value})), FALSE)"
    )


def _orderable(value: Any) -> bool:
    return isinstance(value, (int, float, str)) and not isinstance(value, bool)


def _is_operator_object(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(str(key).startswith("$") for key in value)


__all__ = ["Parameters", "compile_filter", "document_key", "schema_name", "table_name"]
