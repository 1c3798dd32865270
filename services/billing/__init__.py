"""Subscription and entitlement reconciliation engine.

Synchronous, transactional functions over a SQLAlchemy ``Session``; provider
I/O lives in :mod:`services.billing_service`.
"""

from .errors import (
    BillingError,
    BillingErrorKind,
    ConflictError,
    LimitExceededError,
    NotFoundError,
    Outcome,
    ProviderError,
    ValidationError,
)

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
