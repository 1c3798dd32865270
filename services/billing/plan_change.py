"""Immediate upgrades, period-end downgrades and the scheduled-change sweep."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from core.billing_constants import SubscriptionStatus
from models.subscription import Subscription
from services.billing.audit import record_billing_audit
from services.billing.catalog import BillingTarget, load_target, target_rank
from services.billing.clock import utcnow
from services.billing.errors import BillingError, ConflictError, NotFoundError, Outcome, ValidationError
from services.billing.state_machine import apply_transition, require_single_target
from services.billing_metrics import record_sweep_action

logger = logging.getLogger(__name__)

_CHANGEABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class ChangeKind(str, Enum):
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class ScheduledChangeSweep:
    examined: int
    committed: int
    conflicts: int


def build_target(plan_id: Optional[uuid.UUID], bundle_id: Optional[uuid.UUID]) -> Outcome[BillingTarget]:
    error = require_single_target(plan_id, bundle_id)
    if error is not None:
        return Outcome.failure(error)
    return Outcome.success(BillingTarget(plan_id=plan_id, bundle_id=bundle_id))


def current_target(subscription: Subscription) -> BillingTarget:
    if subscription.plan_id is not None:
        return BillingTarget(plan_id=subscription.plan_id)
    return BillingTarget(bundle_id=subscription.bundle_id)


def upcoming_target(subscription: Subscription) -> Optional[BillingTarget]:
    if subscription.upcoming_plan_id is not None:
        return BillingTarget(plan_id=subscription.upcoming_plan_id)
    if subscription.upcoming_bundle_id is not None:
        return BillingTarget(bundle_id=subscription.upcoming_bundle_id)
    return None


def classify_change(db: Session, subscription: Subscription, target: BillingTarget) -> Outcome[ChangeKind]:
    """Moves to a lower rank are deferred; equal or higher ranks apply now."""
    if subscription.status not in _CHANGEABLE_STATUSES:
        return Outcome.failure(
            ConflictError("subscription.not_changeable", f"Cannot change plan while {subscription.status}.")
        )
    if target == current_target(subscription):
        return Outcome.failure(ValidationError("billing.same_target", "Subscription is already on this plan."))
    item = load_target(db, target)
    if item is None or not getattr(item, "active", True):
        return Outcome.failure(NotFoundError("billing.target_not_found", "Plan or bundle not found."))
    target_value = target_rank(db, target)
    current_value = target_rank(db, current_target(subscription))
    if current_value is not None and target_value is not None and target_value < current_value:
        return Outcome.success(ChangeKind.DEFERRED)
    return Outcome.success(ChangeKind.IMMEDIATE)


def _assign_target(subscription: Subscription, target: BillingTarget) -> None:
    subscription.plan_id = target.plan_id
    subscription.bundle_id = target.bundle_id


def clear_upcoming(subscription: Subscription) -> bool:
    if subscription.upcoming_plan_id is None and subscription.upcoming_bundle_id is None and subscription.provider_schedule_id is None:
        return False
    subscription.upcoming_plan_id = None
    subscription.upcoming_bundle_id = None
    subscription.provider_schedule_id = None
    return True


def commit_scheduled_change(subscription: Subscription) -> bool:
    """Swap ``upcoming_*`` into the current target. Returns ``False`` if nothing was pending."""
    target = upcoming_target(subscription)
    if target is None:
        return False
    _assign_target(subscription, target)
    clear_upcoming(subscription)
    return True


def apply_immediate_change(
    db: Session,
    subscription_id: uuid.UUID,
    target: BillingTarget,
    *,
    interval: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    """Swap to ``target`` now, drop any pending downgrade and re-resolve entitlements."""

    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        _assign_target(subscription, target)
        clear_upcoming(subscription)
        if interval:
            subscription.interval = interval
        return None

    return apply_transition(db, subscription_id, _mutate, now=now)


def schedule_downgrade(
    db: Session,
    subscription_id: uuid.UUID,
    target: BillingTarget,
    *,
    provider_schedule_id: Optional[str] = None,
) -> Outcome[Subscription]:
    """Record the deferred target. Entitlements stay on the current plan."""

    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        if subscription.status not in _CHANGEABLE_STATUSES:
            return ConflictError("subscription.not_changeable", f"Cannot change plan while {subscription.status}.")
        subscription.upcoming_plan_id = target.plan_id
        subscription.upcoming_bundle_id = target.bundle_id
        if provider_schedule_id is not None:
            subscription.provider_schedule_id = provider_schedule_id
        return None

    return apply_transition(db, subscription_id, _mutate, resolve=False)


def attach_schedule_id(db: Session, subscription_id: uuid.UUID, provider_schedule_id: str) -> Outcome[Subscription]:
    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        subscription.provider_schedule_id = provider_schedule_id
        return None

    return apply_transition(db, subscription_id, _mutate, resolve=False)


def clear_scheduled_change(
    db: Session,
    subscription_id: uuid.UUID,
    *,
    expected: Optional[BillingTarget] = None,
) -> Outcome[Subscription]:
    """Drop a pending downgrade. Pure metadata: no entitlement recomputation.

    With ``expected`` set, only that pending target is cleared; a newer
    schedule written in the meantime is left alone.
    """

    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        pending = upcoming_target(subscription)
        if pending is None:
            return ConflictError("subscription.no_scheduled_change", "No scheduled plan change to cancel.")
        if expected is not None and pending != expected:
            return ConflictError("subscription.conflict", "Scheduled change was replaced concurrently.")
        clear_upcoming(subscription)
        return None

    return apply_transition(db, subscription_id, _mutate, resolve=False)


def apply_due_scheduled_changes(db: Session, *, now: Optional[datetime] = None) -> ScheduledChangeSweep:
    """Commit downgrades whose period ended; covers renewals the provider never reported."""
    moment = now or utcnow()
    stmt = select(Subscription.id).where(
        Subscription.status.in_(
            [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value, SubscriptionStatus.PAST_DUE.value]
        ),
        Subscription.current_period_end.is_not(None),
        Subscription.current_period_end <= moment,
        or_(Subscription.upcoming_plan_id.is_not(None), Subscription.upcoming_bundle_id.is_not(None)),
    )
    due_ids: List[uuid.UUID] = list(db.execute(stmt).scalars())
    committed = 0
    conflicts = 0
    for subscription_id in due_ids:
        swapped = {"done": False}

        def _mutate(subscription: Subscription) -> Optional[BillingError]:
            swapped["done"] = commit_scheduled_change(subscription)
            return None

        outcome = apply_transition(db, subscription_id, _mutate, now=moment)
        if not outcome.ok:
            conflicts += 1
            logger.warning("Scheduled change for %s not applied: %s", subscription_id, outcome.error.code)
            continue
        if swapped["done"]:
            committed += 1
            subscription = outcome.unwrap()
            record_billing_audit(
                db,
                action="subscription.scheduled_change_committed",
                organization_id=subscription.organization_id,
                subscription_id=subscription.id,
                extra={"plan_id": str(subscription.plan_id or ""), "bundle_id": str(subscription.bundle_id or "")},
                now=moment,
            )
    record_sweep_action("scheduled_changes", "committed", committed)
    record_sweep_action("scheduled_changes", "conflict", conflicts)
    if due_ids:
        logger.info("Scheduled-change sweep: examined=%d committed=%d conflicts=%d", len(due_ids), committed, conflicts)
    return ScheduledChangeSweep(examined=len(due_ids), committed=committed, conflicts=conflicts)


__all__ = [
    "ChangeKind",
    "ScheduledChangeSweep",
    "apply_due_scheduled_changes",
    "apply_immediate_change",
    "attach_schedule_id",
    "build_target",
    "classify_change",
    "clear_scheduled_change",
    "clear_upcoming",
    "commit_scheduled_change",
    "current_target",
    "schedule_downgrade",
    "upcoming_target",
]
