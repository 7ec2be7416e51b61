"""Error kinds, operation results and exceptions.

Expected failures (denied, invalid transition, self-delegation, ...) are
returned as a ``Result`` carrying an ``ErrorKind``. Exceptions are reserved
for infrastructure faults, which must never be mistaken for a denial.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    """Stable failure categories. Hosts map these to messages / status codes."""

    UNAUTHORIZED = "unauthorized"  # No authenticated actor
    FORBIDDEN = "forbidden"        # Actor lacks permission or is the wrong actor
    NOT_FOUND = "not_found"
    VALIDATION = "validation"      # Bad input or invalid transition
    CONFLICT = "conflict"          # Concurrent modification
    INTERNAL = "internal"          # Infrastructure fault


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a core operation.

    Attributes:
        ok: True on success
        value: Operation value on success (entity, delegation, ...)
        error: Failure kind, None on success
        detail: Machine-readable failure context (e.g. current/requested/allowed)
        events: Domain events produced by a successful operation
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: dict[str, Any] = field(default_factory=dict)
    events: list = field(default_factory=list)

    @classmethod
    def success(cls, value: Optional[T] = None, events: Optional[list] = None) -> "Result[T]":
        return cls(ok=True, value=value, events=list(events or []))

    @classmethod
    def failure(cls, kind: ErrorKind, **detail: Any) -> "Result[T]":
        return cls(ok=False, error=kind, detail=detail)

    def __bool__(self) -> bool:
        return self.ok


class QmsCoreError(Exception):
    """Base class for exceptions raised by qms_core."""

    kind: ErrorKind = ErrorKind.INTERNAL


class InfrastructureError(QmsCoreError):
    """Raised when the persistence layer fails while reading or writing."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class ConcurrencyError(QmsCoreError):
    """Raised when a flush hits a row another writer changed (stale version)."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action
