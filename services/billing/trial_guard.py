"""One free trial per organisation per tool, and one organisation per card.

The card check goes through the ``trial_fingerprints`` table, whose unique
``(tool_id, fingerprint)`` key decides the race between two organisations
registering the same card at once: the insert that loses is the duplicate.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.billing_constants import CancellationReason, SubscriptionStatus
from models.catalog import Plan
from models.payments import TrialFingerprint
from models.subscription import Subscription
from services.billing.audit import record_billing_audit
from services.billing.catalog import BillingTarget, tool_ids_for_target
from services.billing.clock import utcnow
from services.billing.errors import ConflictError, Outcome
from services.billing.state_machine import cancel_locally

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrialGuardResult:
    checked: bool
    duplicate_card: bool = False
    first_organization_id: Optional[uuid.UUID] = None


def _target_of(subscription: Subscription) -> BillingTarget:
    if subscription.plan_id is not None:
        return BillingTarget(plan_id=subscription.plan_id)
    return BillingTarget(bundle_id=subscription.bundle_id)


def check_trial_eligibility(
    db: Session,
    organization_id: uuid.UUID,
    tool_id: uuid.UUID,
    *,
    exclude_subscription_id: Optional[uuid.UUID] = None,
) -> Outcome[None]:
    """Reject a second trial, or any trial after a duplicate-card cancellation."""
    stmt = select(Subscription).where(
        Subscription.organization_id == organization_id,
        or_(
            Subscription.trial_start.is_not(None),
            Subscription.cancellation_reason == CancellationReason.DUPLICATE_CARD.value,
        ),
    )
    if exclude_subscription_id is not None:
        stmt = stmt.where(Subscription.id != exclude_subscription_id)
    for previous in db.execute(stmt).scalars():
        if tool_id in tool_ids_for_target(db, _target_of(previous)):
            code = (
                "trial.duplicate_card"
                if previous.cancellation_reason == CancellationReason.DUPLICATE_CARD.value
                else "trial.already_used"
            )
            return Outcome.failure(
                ConflictError(code, "This organization has already used its free trial for this tool.")
            )
    return Outcome.success(None)


def _trial_tools(db: Session, subscription: Subscription) -> Iterable[uuid.UUID]:
    """Tools whose trial this subscription consumes; paid active plans consume none."""
    if subscription.plan_id is None:
        return ()
    plan = db.get(Plan, subscription.plan_id)
    if plan is None or (plan.trial_period_days or 0) <= 0:
        return ()
    status = subscription.status
    if status == SubscriptionStatus.ACTIVE.value and Decimal(plan.price or 0) > 0:
        return ()
    if status not in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value):
        return ()
    return (plan.tool_id,)


def _claim_fingerprint(
    db: Session,
    *,
    tool_id: uuid.UUID,
    fingerprint: str,
    subscription: Subscription,
    now: datetime,
) -> Optional[TrialFingerprint]:
    """Return the owning row, inserting one for ``subscription`` if none exists."""
    stmt = select(TrialFingerprint).where(
        TrialFingerprint.tool_id == tool_id,
        TrialFingerprint.fingerprint == fingerprint,
    )
    existing = db.execute(stmt).scalars().first()
    if existing is not None:
        return existing
    claim = TrialFingerprint(
        tool_id=tool_id,
        fingerprint=fingerprint,
        organization_id=subscription.organization_id,
        subscription_id=subscription.id,
        created_at=now,
    )
    try:
        db.add(claim)
        db.commit()
        return claim
    except IntegrityError:
        db.rollback()
        logger.info("Fingerprint for tool=%s registered concurrently; re-reading owner.", tool_id)
        return db.execute(stmt.execution_options(populate_existing=True)).scalars().first()


def enforce_trial_fingerprint(
    db: Session,
    subscription: Subscription,
    fingerprint: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> Outcome[TrialGuardResult]:
    """Register the card for this subscription's trial or cancel it as a duplicate.

    The subscription row already exists (so it shows in billing history); a
    duplicate flips it to ``canceled`` with ``cancellation_reason=duplicate_card``.
    The caller owns cancelling it at the provider.
    """
    if not fingerprint:
        return Outcome.success(TrialGuardResult(checked=False))
    moment = now or utcnow()
    tools = list(_trial_tools(db, subscription))
    if not tools:
        return Outcome.success(TrialGuardResult(checked=False))

    for tool_id in tools:
        owner = _claim_fingerprint(db, tool_id=tool_id, fingerprint=fingerprint, subscription=subscription, now=moment)
        if owner is None or owner.organization_id == subscription.organization_id:
            continue

        logger.warning(
            "Duplicate trial card for tool=%s: org=%s already trialed; canceling subscription %s.",
            tool_id,
            owner.organization_id,
            subscription.id,
            extra={"trial_guard": {"tool_id": str(tool_id), "subscription_id": str(subscription.id)}},
        )
        canceled = cancel_locally(db, subscription.id, reason=CancellationReason.DUPLICATE_CARD, now=moment)
        if not canceled.ok:
            return Outcome.failure(canceled.error)
        record_billing_audit(
            db,
            action="subscription.duplicate_card_canceled",
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
            extra={"tool_id": str(tool_id), "first_organization_id": str(owner.organization_id)},
            now=moment,
        )
        return Outcome.success(
            TrialGuardResult(checked=True, duplicate_card=True, first_organization_id=owner.organization_id)
        )
    return Outcome.success(TrialGuardResult(checked=True))


__all__ = ["TrialGuardResult", "check_trial_eligibility", "enforce_trial_fingerprint"]
