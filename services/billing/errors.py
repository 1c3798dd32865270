"""Error kinds and the ``Outcome`` result type returned by billing operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class BillingErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PROVIDER = "provider"
    LIMIT_EXCEEDED = "limit_exceeded"


@dataclass(eq=False)
class BillingError(RuntimeError):
    """Base class carrying a machine-readable ``code`` and user-facing ``message``."""

    code: str
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    kind = BillingErrorKind.VALIDATION

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            payload["detail"] = dict(self.detail)
        return payload


@dataclass(eq=False)
class ValidationError(BillingError):
    kind = BillingErrorKind.VALIDATION


@dataclass(eq=False)
class NotFoundError(BillingError):
    kind = BillingErrorKind.NOT_FOUND


@dataclass(eq=False)
class ConflictError(BillingError):
    kind = BillingErrorKind.CONFLICT


@dataclass(eq=False)
class ProviderError(BillingError):
    """Remote call failed after retries; ``status_code`` is the last HTTP status seen."""

    status_code: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None

    kind = BillingErrorKind.PROVIDER


@dataclass(eq=False)
class LimitExceededError(BillingError):
    kind = BillingErrorKind.LIMIT_EXCEEDED


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a value or a :class:`BillingError`, never both."""

    value: Optional[T] = None
    error: Optional[BillingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BillingError) -> "Outcome[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = [
    "BillingError",
    "BillingErrorKind",
    "ConflictError",
    "LimitExceededError",
    "NotFoundError",
    "Outcome",
    "ProviderError",
    "ValidationError",
]
