"""Shared dataclasses used across the grammar, dispatcher and stores."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

Document = Mapping[str, Any]


class Operation(str, Enum):
    """Closed set of operations a command may name."""

    FIND = "find"
    FIND_ONE = "findOne"
    INSERT_ONE = "insertOne"
    INSERT_MANY = "insertMany"
    UPDATE_ONE = "updateOne"
    UPDATE_MANY = "updateMany"
    DELETE_ONE = "deleteOne"
    DELETE_MANY = "deleteMany"

    @classmethod
    def names(cls) -> tuple[str, ...]:
        return tuple(member.value for member in cls)


@dataclass(frozen=True, slots=True)
class OperationDescriptor:
    """Parsed and validated form of a command string."""

    collection: str
    operation: Operation
    arguments: Any


@dataclass(frozen=True, slots=True)
class InsertResult:
    inserted_ids: tuple[str, ...]
    many: bool = False

    def to_payload(self) -> dict[str, object]:
        if self.many:
            return {
                "acknowledged": True,
                "insertedCount": len(self.inserted_ids),
                "insertedIds": list(self.inserted_ids),
            }
        return {"acknowledged": True, "insertedId": self.inserted_ids[0]}


@dataclass(frozen=True, slots=True)
class UpdateResult:
    matched_count: int
    modified_count: int

    def to_payload(self) -> dict[str, object]:
        return {
            "acknowledged": True,
            "matchedCount": self.matched_count,
            "modifiedCount": self.modified_count,
        }


@dataclass(frozen=True, slots=True)
class DeleteResult:
    deleted_count: int

    def to_payload(self) -> dict[str, object]:
        return {"acknowledged": True, "deletedCount": self.deleted_count}


__all__ = [
    "DeleteResult",
    "Document",
    "InsertResult",
    "Operation",
    "OperationDescriptor",
    "UpdateResult",
]
