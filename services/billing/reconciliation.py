"""Apply provider subscription snapshots onto local rows.

Both the webhook (push) and manual sync (pull) paths end here. The function is
idempotent: an event snapshot created before the last applied provider
timestamp is ignored, and re-applying the same snapshot changes nothing.
Pulled objects carry no event time; they always apply and only raise the
watermark to the latest provider-side timestamp they contain, so an event the
provider creates in the same second as a pull is never mistaken for stale.
Provider-owned fields (status, periods, trial window, cancel flag) always take
the remote value; the pending ``upcoming_*`` target is local intent and is only
committed when the snapshot shows the period boundary has been crossed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.billing_constants import CancellationReason, SubscriptionStatus
from models.org import Organization
from models.subscription import Subscription
from services.billing.audit import record_billing_audit
from services.billing.catalog import ResolvedPrice, resolve_price_id
from services.billing.clock import ensure_utc, utcnow
from services.billing.entitlement_resolver import ResolutionReport, resolve_entitlements
from services.billing.errors import BillingError, NotFoundError, Outcome, ValidationError
from services.billing.plan_change import clear_upcoming, commit_scheduled_change, current_target, upcoming_target
from services.billing.remote import RemoteSubscription
from services.billing.state_machine import apply_transition, map_provider_status, set_status
from services.billing.trial_guard import enforce_trial_fingerprint

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    subscription_id: Optional[uuid.UUID] = None
    organization_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    created: bool = False
    applied: bool = False
    stale: bool = False
    status_refused: bool = False
    scheduled_change_committed: bool = False
    duplicate_card: bool = False
    report: Optional[ResolutionReport] = None


def find_subscription(db: Session, provider_subscription_id: str) -> Optional[Subscription]:
    stmt = select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
    return db.execute(stmt.execution_options(populate_existing=True)).scalars().first()


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def resolve_organization_id(
    db: Session,
    *,
    organization_id: Optional[Any] = None,
    customer_id: Optional[str] = None,
) -> Optional[uuid.UUID]:
    """Organisation from an explicit id (metadata) or the provider customer link."""
    candidate = _parse_uuid(organization_id) if organization_id else None
    if candidate is not None and db.get(Organization, candidate) is not None:
        return candidate
    if customer_id:
        stmt = select(Organization.id).where(Organization.provider_customer_id == customer_id)
        found = db.execute(stmt).scalars().first()
        if found is not None:
            return found
    return None


def _assign(subscription: Subscription, attribute: str, value: Any) -> bool:
    """Set only on real change; SQLite hands datetimes back without tzinfo."""
    current = getattr(subscription, attribute)
    if isinstance(current, datetime) or isinstance(value, datetime):
        if ensure_utc(current) == ensure_utc(value):
            return False
    elif current == value:
        return False
    setattr(subscription, attribute, value)
    return True


def _latest(first: Optional[datetime], second: Optional[datetime]) -> Optional[datetime]:
    if first is None or second is None:
        return first or second
    return max(first, second)


def _create_local(
    db: Session,
    snapshot: RemoteSubscription,
    organization_id: uuid.UUID,
    resolved: ResolvedPrice,
) -> Subscription:
    subscription = Subscription(
        organization_id=organization_id,
        plan_id=resolved.target.plan_id,
        bundle_id=resolved.target.bundle_id,
        interval=resolved.interval,
        provider_subscription_id=snapshot.provider_subscription_id,
        provider_customer_id=snapshot.customer_id,
        status=SubscriptionStatus.INCOMPLETE.value,
        cancel_at_period_end=False,
    )
    try:
        db.add(subscription)
        db.commit()
        logger.info(
            "Created local subscription %s for provider subscription %s (org=%s).",
            subscription.id,
            snapshot.provider_subscription_id,
            organization_id,
        )
        return subscription
    except IntegrityError:
        db.rollback()
        existing = find_subscription(db, snapshot.provider_subscription_id)
        if existing is None:
            raise
        return existing


class _SnapshotApplier:
    """Mutation passed to ``apply_transition``; may run twice on a conflict."""

    def __init__(
        self,
        snapshot: RemoteSubscription,
        resolved: Optional[ResolvedPrice],
        now: datetime,
        cancellation_reason: Optional[CancellationReason],
    ) -> None:
        self.snapshot = snapshot
        self.resolved = resolved
        self.now = now
        self.cancellation_reason = cancellation_reason
        self.stale = False
        self.status_refused = False
        self.committed_schedule = False

    def __call__(self, subscription: Subscription) -> Optional[BillingError]:
        self.stale = self.status_refused = self.committed_schedule = False
        snapshot = self.snapshot
        observed = ensure_utc(snapshot.observed_at)
        last_synced = ensure_utc(subscription.provider_synced_at)
        if last_synced is not None and observed is not None and observed < last_synced:
            self.stale = True
            return None
        watermark = observed if observed is not None else _latest(last_synced, ensure_utc(snapshot.ordering_floor))
        moment = observed or self.now

        status = map_provider_status(snapshot.status)
        if status is None:
            return ValidationError("subscription.unknown_status", f"Unknown provider status '{snapshot.status}'.")
        if not set_status(subscription, status, now=moment):
            self.status_refused = True
            if watermark is not None:
                _assign(subscription, "provider_synced_at", watermark)
            return None

        previous_period_end = ensure_utc(subscription.current_period_end)
        _assign(subscription, "current_period_start", snapshot.current_period_start)
        _assign(subscription, "current_period_end", snapshot.current_period_end)
        _assign(subscription, "trial_start", snapshot.trial_start)
        _assign(subscription, "trial_end", snapshot.trial_end)
        _assign(subscription, "cancel_at_period_end", bool(snapshot.cancel_at_period_end))
        if snapshot.canceled_at is not None:
            _assign(subscription, "canceled_at", snapshot.canceled_at)
        if snapshot.customer_id:
            _assign(subscription, "provider_customer_id", snapshot.customer_id)
        if snapshot.card_fingerprint:
            _assign(subscription, "card_fingerprint", snapshot.card_fingerprint)

        if status is SubscriptionStatus.PAST_DUE and subscription.last_payment_failure_at is None:
            subscription.last_payment_failure_at = moment
        elif status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            _assign(subscription, "last_payment_failure_at", None)

        if status is SubscriptionStatus.CANCELED:
            clear_upcoming(subscription)
            if self.cancellation_reason is not None and subscription.cancellation_reason is None:
                subscription.cancellation_reason = self.cancellation_reason.value
        else:
            self._reconcile_target(subscription, previous_period_end)

        if watermark is not None:
            _assign(subscription, "provider_synced_at", watermark)
        return None

    def _reconcile_target(self, subscription: Subscription, previous_period_end: Optional[datetime]) -> None:
        remote_target = self.resolved.target if self.resolved else None
        pending = upcoming_target(subscription)
        if pending is not None:
            new_start = ensure_utc(self.snapshot.current_period_start)
            crossed = previous_period_end is not None and new_start is not None and new_start >= previous_period_end
            if remote_target == pending or crossed:
                self.committed_schedule = commit_scheduled_change(subscription)
                return
        if remote_target is not None and remote_target != current_target(subscription):
            # The provider moved the item outside a scheduled change (e.g. a portal upgrade).
            subscription.plan_id = remote_target.plan_id
            subscription.bundle_id = remote_target.bundle_id
            clear_upcoming(subscription)
        if self.resolved is not None:
            _assign(subscription, "interval", self.resolved.interval)


def reconcile_subscription(
    db: Session,
    snapshot: RemoteSubscription,
    *,
    now: Optional[datetime] = None,
    organization_id: Optional[Any] = None,
    cancellation_reason: Optional[CancellationReason] = None,
) -> Outcome[ReconcileResult]:
    """Mirror one provider snapshot locally, then run the trial guard and resolver."""
    moment = now or utcnow()
    if not snapshot.provider_subscription_id:
        return Outcome.failure(ValidationError("subscription.missing_id", "Snapshot has no subscription id."))

    resolved = resolve_price_id(db, snapshot.price_id)
    result = ReconcileResult()
    subscription = find_subscription(db, snapshot.provider_subscription_id)
    if subscription is None:
        org_id = resolve_organization_id(
            db,
            organization_id=organization_id or snapshot.organization_id,
            customer_id=snapshot.customer_id,
        )
        if org_id is None:
            return Outcome.failure(
                NotFoundError("organization.not_found", "No organization linked to this provider subscription.")
            )
        if resolved is None:
            return Outcome.failure(
                ValidationError("billing.unknown_price", f"Price '{snapshot.price_id}' matches no plan or bundle.")
            )
        subscription = _create_local(db, snapshot, org_id, resolved)
        result.created = True

    applier = _SnapshotApplier(snapshot, resolved, moment, cancellation_reason)
    outcome = apply_transition(db, subscription.id, applier, resolve=False, now=moment)
    if not outcome.ok:
        return Outcome.failure(outcome.error)
    subscription = outcome.unwrap()

    result.subscription_id = subscription.id
    result.organization_id = subscription.organization_id
    result.status = subscription.status
    result.stale = applier.stale
    result.status_refused = applier.status_refused
    result.scheduled_change_committed = applier.committed_schedule
    result.applied = not applier.stale and not applier.status_refused
    if applier.stale:
        logger.info(
            "Skipping stale snapshot for %s (observed=%s).",
            snapshot.provider_subscription_id,
            snapshot.observed_at.isoformat(),
        )
        return Outcome.success(result)

    if applier.committed_schedule:
        record_billing_audit(
            db,
            action="subscription.scheduled_change_committed",
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
            extra={"source": "reconciliation", "provider_subscription_id": snapshot.provider_subscription_id},
            now=moment,
        )

    guard = enforce_trial_fingerprint(db, subscription, subscription.card_fingerprint, now=moment)
    if not guard.ok:
        return Outcome.failure(guard.error)
    result.duplicate_card = guard.unwrap().duplicate_card
    if result.duplicate_card:
        result.status = SubscriptionStatus.CANCELED.value

    result.report = resolve_entitlements(db, subscription.organization_id, now=moment)
    return Outcome.success(result)


def record_payment_failure(db: Session, subscription_id: uuid.UUID, failed_at: datetime) -> Outcome[Subscription]:
    """Stamp the first failure of the current dunning cycle; the grace period runs from it."""

    def _mutate(subscription: Subscription) -> Optional[BillingError]:
        if subscription.status == SubscriptionStatus.CANCELED.value:
            return None
        if subscription.last_payment_failure_at is None:
            subscription.last_payment_failure_at = failed_at
        return None

    return apply_transition(db, subscription_id, _mutate, now=failed_at)


__all__ = [
    "ReconcileResult",
    "find_subscription",
    "reconcile_subscription",
    "record_payment_failure",
    "resolve_organization_id",
]
