"""Explicit result values returned by the ledger services."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    """Failure categories surfaced by service operations."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UPSTREAM = "upstream"
    PERSISTENCE = "persistence"


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a :class:`ServiceError`, never both."""

    value: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "Result[T]":
        return cls(error=ServiceError(kind=kind, code=code, message=message, details=details or {}))

    @classmethod
    def from_error(cls, error: ServiceError) -> "Result[T]":
        return cls(error=error)


__all__ = ["ErrorKind", "ServiceError", "Result"]
