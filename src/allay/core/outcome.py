"""Explicit success/error results for expected business conditions.

Services return an ``Outcome`` for things a caller is expected to handle
(missing parent conversation, duplicate invitation, non-member access).
Unexpected failures (database unreachable, Slack transport errors) are not
wrapped; they propagate as exceptions to the HTTP edge.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error taxonomy shared by every service."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or a ServiceError, never both."""

    value: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Outcome[T]":
        return cls(error=ServiceError(kind=kind, message=message))

    @classmethod
    def not_found(cls, message: str) -> "Outcome[T]":
        return cls.failure(ErrorKind.NOT_FOUND, message)

    @classmethod
    def conflict(cls, message: str) -> "Outcome[T]":
        return cls.failure(ErrorKind.CONFLICT, message)

    @classmethod
    def forbidden(cls, message: str) -> "Outcome[T]":
        return cls.failure(ErrorKind.FORBIDDEN, message)

    @classmethod
    def invalid(cls, message: str) -> "Outcome[T]":
        return cls.failure(ErrorKind.VALIDATION, message)
