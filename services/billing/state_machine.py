"""Subscription lifecycle: legal transitions, user-action checks and the CAS wrapper.

Every write to a ``subscriptions`` row goes through :func:`apply_transition`,
which loads a fresh copy, applies a mutation and commits. The row's ``version``
column turns the commit into a compare-and-swap; a lost race is retried once
against a fresh read and then reported as ``subscription.conflict``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.billing_constants import PROVIDER_STATUS_MAP, CancellationReason, SubscriptionStatus
from models.subscription import Subscription
from services.billing.clock import ensure_utc, utcnow
from services.billing.entitlement_resolver import resolve_entitlements
from services.billing.errors import BillingError, ConflictError, NotFoundError, Outcome, ValidationError
from services.billing_metrics import record_transition_conflict

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.TRIALING, S.ACTIVE}),
    S.TRIALING: frozenset({S.ACTIVE, S.CANCELED}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED}),
    S.CANCELED: frozenset(),
}

MAX_TRANSITION_ATTEMPTS = 2

Mutation = Callable[[Subscription], Optional[BillingError]]


class CancelMode(str, Enum):
    AT_PERIOD_END = "at_period_end"
    IMMEDIATE = "immediate"


def map_provider_status(raw: Optional[str]) -> Optional[SubscriptionStatus]:
    if not raw:
        return None
    return PROVIDER_STATUS_MAP.get(raw.strip().lower())


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _current_status(subscription: Subscription) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(subscription.status)
    except ValueError:
        return SubscriptionStatus.INCOMPLETE


def set_status(subscription: Subscription, target: SubscriptionStatus, *, now: datetime) -> bool:
    """Apply a provider-observed status. Returns ``False`` when it was refused.

    ``canceled`` is terminal and never reopened. Any other edge outside the
    table is still applied because the provider owns the status; it is logged
    so that gaps in event delivery are visible.
    """
    current = _current_status(subscription)
    if current == target:
        return True
    if current is S.CANCELED:
        logger.warning(
            "Ignoring provider status %s for canceled subscription %s.",
            target.value,
            subscription.id,
            extra={"subscription": {"id": str(subscription.id), "from": current.value, "to": target.value}},
        )
        return False
    if not can_transition(current, target):
        logger.warning(
            "Out-of-band subscription transition %s -> %s for %s; accepting provider state.",
            current.value,
            target.value,
            subscription.id,
        )
    subscription.status = target.value
    if target is S.CANCELED and subscription.canceled_at is None:
        subscription.canceled_at = now
    return True


def apply_transition(
    db: Session,
    subscription_id: uuid.UUID,
    mutate: Mutation,
    *,
    resolve: bool = True,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    """Run ``mutate`` against a fresh row and commit under optimistic concurrency.

    ``mutate`` returns a :class:`BillingError` to abort without writing. It may
    run twice, so it must re-check its preconditions on the row it is given.
    """
    for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
        subscription = db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            db.rollback()
            return Outcome.failure(NotFoundError("subscription.not_found", "Subscription not found."))
        error = mutate(subscription)
        if error is not None:
            db.rollback()
            return Outcome.failure(error)
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            if attempt < MAX_TRANSITION_ATTEMPTS:
                record_transition_conflict("retried")
                logger.info("Subscription %s changed concurrently; retrying with a fresh read.", subscription_id)
            continue
        if resolve:
            resolve_entitlements(db, subscription.organization_id, now=now)
        return Outcome.success(subscription)

    record_transition_conflict("surfaced")
    logger.warning("Subscription %s transition lost the race %d times.", subscription_id, MAX_TRANSITION_ATTEMPTS)
    return Outcome.failure(
        ConflictError("subscription.conflict", "Subscription was modified concurrently. Please retry.")
    )


def validate_cancel(subscription: Subscription, *, now: datetime, free_trial: bool) -> Outcome[CancelMode]:
    status = _current_status(subscription)
    if status is S.CANCELED:
        return Outcome.failure(ConflictError("subscription.already_canceled", "Subscription is already canceled."))
    if subscription.cancel_at_period_end:
        return Outcome.failure(
            ConflictError("subscription.cancel_pending", "Subscription is already set to cancel at period end.")
        )
    if status is S.INCOMPLETE:
        return Outcome.success(CancelMode.IMMEDIATE)
    if free_trial and status is S.TRIALING:
        return Outcome.success(CancelMode.IMMEDIATE)
    period_end = ensure_utc(subscription.current_period_end)
    if period_end is not None and period_end <= now:
        return Outcome.success(CancelMode.IMMEDIATE)
    return Outcome.success(CancelMode.AT_PERIOD_END)


def validate_resume(subscription: Subscription, *, now: datetime) -> Outcome[None]:
    status = _current_status(subscription)
    if status not in (S.ACTIVE, S.TRIALING):
        return Outcome.failure(
            ConflictError("subscription.not_resumable", f"Cannot resume a subscription in status {status.value}.")
        )
    if not subscription.cancel_at_period_end:
        return Outcome.failure(ConflictError("subscription.not_resumable", "No cancellation is pending."))
    period_end = ensure_utc(subscription.current_period_end)
    if period_end is not None and period_end <= now:
        return Outcome.failure(ConflictError("subscription.not_resumable", "Cancellation already took effect."))
    return Outcome.success(None)


def validate_cancel_trial(subscription: Subscription) -> Outcome[None]:
    if _current_status(subscription) is not S.TRIALING:
        return Outcome.failure(ConflictError("subscription.not_trialing", "Subscription is not in a trial."))
    return Outcome.success(None)


def validate_cancel_downgrade(subscription: Subscription) -> Outcome[None]:
    if subscription.upcoming_plan_id is None and subscription.upcoming_bundle_id is None:
        return Outcome.failure(
            ConflictError("subscription.no_scheduled_change", "No scheduled plan change to cancel.")
        )
    return Outcome.success(None)


def ensure_owner(subscription: Optional[Subscription], organization_id: uuid.UUID) -> Outcome[Subscription]:
    if subscription is None or subscription.organization_id != organization_id:
        return Outcome.failure(NotFoundError("subscription.not_found", "Subscription not found."))
    return Outcome.success(subscription)


def mark_canceled(
    subscription: Subscription,
    *,
    reason: CancellationReason,
    now: datetime,
) -> None:
    """Terminal local cancel used by the engine's own guards and sweeps."""
    set_status(subscription, S.CANCELED, now=now)
    subscription.cancellation_reason = reason.value
    subscription.cancel_at_period_end = False
    subscription.upcoming_plan_id = None
    subscription.upcoming_bundle_id = None


def cancel_locally(
    db: Session,
    subscription_id: uuid.UUID,
    *,
    reason: CancellationReason,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    moment = now or utcnow()

    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        if _current_status(subscription) is S.CANCELED and subscription.cancellation_reason == reason.value:
            return None
        mark_canceled(subscription, reason=reason, now=moment)
        return None

    return apply_transition(db, subscription_id, _mutate, now=moment)


def set_cancellation_reason(
    db: Session,
    subscription_id: uuid.UUID,
    reason: CancellationReason,
) -> Outcome[Subscription]:
    """Record why a subscription ended; user-intent metadata, never a status change."""

    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        if subscription.cancellation_reason is None:
            subscription.cancellation_reason = reason.value
        return None

    return apply_transition(db, subscription_id, _mutate, resolve=False)


def require_single_target(plan_id: Optional[uuid.UUID], bundle_id: Optional[uuid.UUID]) -> Optional[ValidationError]:
    if (plan_id is None) == (bundle_id is None):
        return ValidationError("billing.target_ambiguous", "Specify exactly one of plan or bundle.")
    return None


__all__ = [
    "ALLOWED_TRANSITIONS",
    "CancelMode",
    "apply_transition",
    "can_transition",
    "cancel_locally",
    "ensure_owner",
    "map_provider_status",
    "mark_canceled",
    "require_single_target",
    "set_cancellation_reason",
    "set_status",
    "validate_cancel",
    "validate_cancel_downgrade",
    "validate_cancel_trial",
    "validate_resume",
]
