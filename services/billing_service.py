"""User-facing billing operations that combine provider calls with the engine.

Provider calls always happen outside any database transaction. State is only
mutated after the provider accepted the request, and then through the
reconciliation core so that status and timestamps come from the provider's
answer. Deferred downgrades are the one local-first action: the pending target
is stored first and rolled back if the provider never confirms the schedule.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from core.billing_constants import CancellationReason, PriceInterval, SubscriptionStatus
from models.catalog import Plan
from models.org import Organization
from models.subscription import OneTimePurchase, Subscription
from services.billing import catalog
from services.billing.audit import record_billing_audit
from services.billing.catalog import BillingTarget
from services.billing.clock import utcnow
from services.billing.errors import ConflictError, NotFoundError, Outcome, ProviderError, ValidationError
from services.billing.plan_change import (
    ChangeKind,
    apply_immediate_change,
    attach_schedule_id,
    build_target,
    classify_change,
    clear_scheduled_change,
    current_target,
    schedule_downgrade,
    upcoming_target,
)
from services.billing.reconciliation import ReconcileResult, find_subscription, reconcile_subscription
from services.billing.remote import RemoteSubscription
from services.billing.settings import BillingSettings, grace_period_days, load_billing_settings
from services.billing.state_machine import (
    CancelMode,
    ensure_owner,
    validate_cancel,
    validate_cancel_downgrade,
    validate_cancel_trial,
    validate_resume,
)
from services.billing.trial_guard import check_trial_eligibility
from services.billing_metrics import record_sweep_action
from services.payments.stripe_client import StripeClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingOverview:
    subscriptions: List[Subscription]
    purchases: List[OneTimePurchase]


@dataclass(frozen=True)
class TrialEligibility:
    eligible: bool
    tool_id: uuid.UUID
    trial_days: int = 0
    reason: Optional[str] = None


@dataclass
class OverdueSweep:
    examined: int = 0
    canceled: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)


# Lookups


def get_organization(db: Session, organization_id: uuid.UUID) -> Outcome[Organization]:
    organization = db.get(Organization, organization_id)
    if organization is None:
        return Outcome.failure(NotFoundError("organization.not_found", "Organization not found."))
    return Outcome.success(organization)


def _owned_subscription(db: Session, organization_id: uuid.UUID, provider_subscription_id: str) -> Outcome[Subscription]:
    return ensure_owner(find_subscription(db, provider_subscription_id), organization_id)


def list_billing_overview(db: Session, organization_id: uuid.UUID) -> Outcome[BillingOverview]:
    found = get_organization(db, organization_id)
    if not found.ok:
        return Outcome.failure(found.error)
    subscriptions = db.execute(
        select(Subscription)
        .where(Subscription.organization_id == organization_id)
        .order_by(Subscription.created_at.desc())
    ).scalars().all()
    purchases = db.execute(
        select(OneTimePurchase)
        .where(OneTimePurchase.organization_id == organization_id)
        .order_by(OneTimePurchase.created_at.desc())
    ).scalars().all()
    return Outcome.success(BillingOverview(subscriptions=list(subscriptions), purchases=list(purchases)))


# Snapshot helpers


async def _with_fingerprint(db: Session, provider: StripeClient, snapshot: RemoteSubscription) -> RemoteSubscription:
    """Attach the card fingerprint when the snapshot is a trial of a trial plan."""
    if snapshot.card_fingerprint or not snapshot.default_payment_method:
        return snapshot
    if snapshot.status not in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value):
        return snapshot
    resolved = catalog.resolve_price_id(db, snapshot.price_id)
    if resolved is None or resolved.target.plan_id is None:
        return snapshot
    plan = db.get(Plan, resolved.target.plan_id)
    if plan is None or (plan.trial_period_days or 0) <= 0:
        return snapshot
    try:
        fingerprint = await provider.card_fingerprint(snapshot.default_payment_method)
    except ProviderError as exc:
        logger.warning(
            "Could not fetch card fingerprint for %s: %s",
            snapshot.provider_subscription_id,
            exc.message,
        )
        return snapshot
    return snapshot.with_fingerprint(fingerprint)


async def apply_remote_snapshot(
    db: Session,
    provider: StripeClient,
    snapshot: RemoteSubscription,
    *,
    now: Optional[datetime] = None,
    organization_id: Optional[Any] = None,
    cancellation_reason: Optional[CancellationReason] = None,
) -> Outcome[ReconcileResult]:
    """Reconcile one snapshot and run the provider follow-ups it calls for."""
    moment = now or utcnow()
    enriched = await _with_fingerprint(db, provider, snapshot)
    outcome = reconcile_subscription(
        db,
        enriched,
        now=moment,
        organization_id=organization_id,
        cancellation_reason=cancellation_reason,
    )
    if not outcome.ok:
        return outcome
    result = outcome.unwrap()

    if result.duplicate_card:
        try:
            await provider.cancel_immediately(
                enriched.provider_subscription_id,
                idempotency_key=f"duplicate-card:{result.subscription_id}",
            )
        except ProviderError as exc:
            # Local row is already canceled and terminal; later syncs cannot reopen it.
            logger.error(
                "Provider cancel for duplicate-card subscription %s failed: %s",
                enriched.provider_subscription_id,
                exc.message,
            )
    elif (
        enriched.auto_cancel_trial
        and result.status == SubscriptionStatus.TRIALING.value
        and not enriched.cancel_at_period_end
    ):
        try:
            remote = await provider.cancel_at_period_end(
                enriched.provider_subscription_id,
                idempotency_key=f"auto-cancel-trial:{result.subscription_id}",
            )
        except ProviderError as exc:
            logger.warning(
                "Could not flag trial %s to end at period end: %s", enriched.provider_subscription_id, exc.message
            )
            return outcome
        follow_up = reconcile_subscription(db, RemoteSubscription.from_provider(remote), now=moment)
        if not follow_up.ok:
            return follow_up
    return outcome


async def sync_subscription(
    db: Session,
    provider: StripeClient,
    provider_subscription_id: str,
    *,
    now: Optional[datetime] = None,
    cancellation_reason: Optional[CancellationReason] = None,
) -> Outcome[ReconcileResult]:
    """Pull path for one subscription."""
    moment = now or utcnow()
    try:
        remote = await provider.retrieve_subscription(provider_subscription_id)
    except ProviderError as exc:
        return Outcome.failure(exc)
    snapshot = RemoteSubscription.from_provider(remote)
    return await apply_remote_snapshot(db, provider, snapshot, now=moment, cancellation_reason=cancellation_reason)


async def sync_organization(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    *,
    now: Optional[datetime] = None,
) -> Outcome[List[ReconcileResult]]:
    """Pull path for every provider subscription of the organisation's customer."""
    moment = now or utcnow()
    found = get_organization(db, organization_id)
    if not found.ok:
        return Outcome.failure(found.error)
    organization = found.unwrap()
    if not organization.provider_customer_id:
        return Outcome.success([])
    try:
        remotes = await provider.list_customer_subscriptions(organization.provider_customer_id)
    except ProviderError as exc:
        return Outcome.failure(exc)

    results: List[ReconcileResult] = []
    for remote in remotes:
        snapshot = RemoteSubscription.from_provider(remote)
        outcome = await apply_remote_snapshot(db, provider, snapshot, now=moment, organization_id=organization_id)
        if outcome.ok:
            results.append(outcome.unwrap())
        elif outcome.error.code == "billing.unknown_price":
            logger.warning("Skipping provider subscription %s: %s", snapshot.provider_subscription_id, outcome.error.message)
        else:
            return Outcome.failure(outcome.error)
    logger.info("Synced %d provider subscriptions for org=%s", len(results), organization_id)
    return Outcome.success(results)


# User actions


async def cancel_subscription(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    provider_subscription_id: str,
    *,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    """Cancel at period end; free trials and lapsed periods cancel immediately."""
    moment = now or utcnow()
    owned = _owned_subscription(db, organization_id, provider_subscription_id)
    if not owned.ok:
        return owned
    subscription = owned.unwrap()
    free_trial = catalog.is_free_trial_target(db, current_target(subscription))
    decided = validate_cancel(subscription, now=moment, free_trial=free_trial)
    if not decided.ok:
        return Outcome.failure(decided.error)
    mode = decided.unwrap()

    key = f"cancel:{subscription.id}:{subscription.version}"
    try:
        if mode is CancelMode.IMMEDIATE:
            remote = await provider.cancel_immediately(provider_subscription_id, idempotency_key=key)
        else:
            remote = await provider.cancel_at_period_end(provider_subscription_id, idempotency_key=key)
    except ProviderError as exc:
        return Outcome.failure(exc)

    reason = CancellationReason.TRIAL_CANCELED if free_trial else CancellationReason.USER_REQUESTED
    return _reconciled(db, remote, moment, cancellation_reason=reason)


async def resume_subscription(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    provider_subscription_id: str,
    *,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    moment = now or utcnow()
    owned = _owned_subscription(db, organization_id, provider_subscription_id)
    if not owned.ok:
        return owned
    subscription = owned.unwrap()
    checked = validate_resume(subscription, now=moment)
    if not checked.ok:
        return Outcome.failure(checked.error)
    try:
        remote = await provider.resume_subscription(
            provider_subscription_id,
            idempotency_key=f"resume:{subscription.id}:{subscription.version}",
        )
    except ProviderError as exc:
        return Outcome.failure(exc)
    return _reconciled(db, remote, moment)


async def cancel_trial(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    provider_subscription_id: str,
    *,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    """End a trial now, revoking trial features regardless of any pending cancel."""
    moment = now or utcnow()
    owned = _owned_subscription(db, organization_id, provider_subscription_id)
    if not owned.ok:
        return owned
    subscription = owned.unwrap()
    checked = validate_cancel_trial(subscription)
    if not checked.ok:
        return Outcome.failure(checked.error)
    try:
        remote = await provider.cancel_immediately(
            provider_subscription_id,
            idempotency_key=f"cancel-trial:{subscription.id}:{subscription.version}",
        )
    except ProviderError as exc:
        return Outcome.failure(exc)
    return _reconciled(db, remote, moment, cancellation_reason=CancellationReason.TRIAL_CANCELED)


async def cancel_scheduled_downgrade(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    provider_subscription_id: str,
) -> Outcome[Subscription]:
    owned = _owned_subscription(db, organization_id, provider_subscription_id)
    if not owned.ok:
        return owned
    subscription = owned.unwrap()
    checked = validate_cancel_downgrade(subscription)
    if not checked.ok:
        return Outcome.failure(checked.error)
    pending = upcoming_target(subscription)
    if subscription.provider_schedule_id:
        try:
            await provider.release_schedule(
                subscription.provider_schedule_id,
                idempotency_key=f"release:{subscription.id}:{subscription.provider_schedule_id}",
            )
        except ProviderError as exc:
            return Outcome.failure(exc)
    return clear_scheduled_change(db, subscription.id, expected=pending)


async def change_plan(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    provider_subscription_id: str,
    *,
    plan_id: Optional[uuid.UUID] = None,
    bundle_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    """Upgrade now or schedule a downgrade for the period boundary."""
    moment = now or utcnow()
    built = build_target(plan_id, bundle_id)
    if not built.ok:
        return Outcome.failure(built.error)
    target = built.unwrap()
    owned = _owned_subscription(db, organization_id, provider_subscription_id)
    if not owned.ok:
        return owned
    subscription = owned.unwrap()
    classified = classify_change(db, subscription, target)
    if not classified.ok:
        return Outcome.failure(classified.error)

    interval = subscription.interval or PriceInterval.MONTHLY.value
    new_price = catalog.price_id_for(db, target, interval)
    current_price = catalog.price_id_for(db, current_target(subscription), interval)
    if not new_price or not current_price:
        return Outcome.failure(
            ValidationError("billing.price_unavailable", f"No {interval} provider price is configured for this change.")
        )

    if classified.unwrap() is ChangeKind.IMMEDIATE:
        return await _apply_upgrade(db, provider, subscription, target, new_price, interval, moment)
    return await _schedule_downgrade(db, provider, subscription, target, current_price, new_price)


async def _apply_upgrade(
    db: Session,
    provider: StripeClient,
    subscription: Subscription,
    target: BillingTarget,
    new_price: str,
    interval: str,
    now: datetime,
) -> Outcome[Subscription]:
    key = f"change:{subscription.id}:{subscription.version}:{new_price}"
    pending = upcoming_target(subscription)
    released = False
    try:
        if subscription.provider_schedule_id:
            await provider.release_schedule(
                subscription.provider_schedule_id,
                idempotency_key=f"release:{subscription.id}:{subscription.provider_schedule_id}",
            )
            released = True
        remote = await provider.retrieve_subscription(subscription.provider_subscription_id)
        items = (remote.get("items") or {}).get("data") or []
        if not items:
            _forget_released_downgrade(db, subscription.id, pending, released)
            return Outcome.failure(
                ValidationError("billing.remote_item_missing", "Provider subscription has no items to update.")
            )
        updated = await provider.update_subscription_price(
            subscription.provider_subscription_id,
            item_id=items[0]["id"],
            price_id=new_price,
            idempotency_key=key,
        )
    except ProviderError as exc:
        _forget_released_downgrade(db, subscription.id, pending, released)
        return Outcome.failure(exc)

    swapped = apply_immediate_change(db, subscription.id, target, interval=interval, now=now)
    if not swapped.ok:
        return swapped
    return _reconciled(db, updated, now)


def _forget_released_downgrade(
    db: Session,
    subscription_id: uuid.UUID,
    pending: Optional[BillingTarget],
    released: bool,
) -> None:
    """The provider no longer holds the schedule, so the sweep must not commit it locally."""
    if not released or pending is None:
        return
    cleared = clear_scheduled_change(db, subscription_id, expected=pending)
    if cleared.ok:
        logger.warning("Upgrade of %s failed after its schedule was released; pending downgrade dropped.", subscription_id)
    else:
        logger.error("Could not drop released downgrade for %s: %s", subscription_id, cleared.error.code)


async def _schedule_downgrade(
    db: Session,
    provider: StripeClient,
    subscription: Subscription,
    target: BillingTarget,
    current_price: str,
    new_price: str,
) -> Outcome[Subscription]:
    scheduled = schedule_downgrade(db, subscription.id, target)
    if not scheduled.ok:
        return scheduled
    try:
        schedule = await provider.schedule_price_change(
            subscription.provider_subscription_id,
            current_price_id=current_price,
            new_price_id=new_price,
            idempotency_key=f"schedule:{subscription.id}:{new_price}",
        )
    except ProviderError as exc:
        reverted = clear_scheduled_change(db, subscription.id, expected=target)
        if not reverted.ok:
            logger.error("Could not roll back scheduled change for %s: %s", subscription.id, reverted.error.code)
        return Outcome.failure(exc)
    logger.info("Scheduled downgrade for %s to %s at period end.", subscription.id, target)
    return attach_schedule_id(db, subscription.id, schedule["id"])


def _reconciled(
    db: Session,
    remote: Dict[str, Any],
    now: datetime,
    *,
    cancellation_reason: Optional[CancellationReason] = None,
) -> Outcome[Subscription]:
    snapshot = RemoteSubscription.from_provider(remote)
    outcome = reconcile_subscription(db, snapshot, now=now, cancellation_reason=cancellation_reason)
    if not outcome.ok:
        return Outcome.failure(outcome.error)
    subscription = db.get(Subscription, outcome.unwrap().subscription_id, populate_existing=True)
    return Outcome.success(subscription)


# Checkout, portal, trials


async def ensure_customer(db: Session, provider: StripeClient, organization: Organization) -> Outcome[str]:
    if organization.provider_customer_id:
        return Outcome.success(organization.provider_customer_id)
    try:
        customer = await provider.create_customer(
            email=organization.billing_email,
            name=organization.name,
            metadata={"organization_id": str(organization.id)},
            idempotency_key=f"customer:{organization.id}",
        )
    except ProviderError as exc:
        return Outcome.failure(exc)
    organization.provider_customer_id = customer["id"]
    db.commit()
    return Outcome.success(customer["id"])


def trial_eligibility(db: Session, organization_id: uuid.UUID, tool_id: uuid.UUID) -> Outcome[TrialEligibility]:
    plan = catalog.trial_plan_for_tool(db, tool_id)
    if plan is None:
        return Outcome.success(TrialEligibility(eligible=False, tool_id=tool_id, reason="trial.unavailable"))
    checked = check_trial_eligibility(db, organization_id, tool_id)
    if not checked.ok:
        return Outcome.success(TrialEligibility(eligible=False, tool_id=tool_id, reason=checked.error.code))
    return Outcome.success(TrialEligibility(eligible=True, tool_id=tool_id, trial_days=plan.trial_period_days))


async def create_checkout_session(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    *,
    plan_id: Optional[uuid.UUID] = None,
    bundle_id: Optional[uuid.UUID] = None,
    interval: str = PriceInterval.MONTHLY.value,
    settings: Optional[BillingSettings] = None,
    now: Optional[datetime] = None,
) -> Outcome[Dict[str, Any]]:
    moment = now or utcnow()
    config = settings or load_billing_settings()
    built = build_target(plan_id, bundle_id)
    if not built.ok:
        return Outcome.failure(built.error)
    target = built.unwrap()
    found = get_organization(db, organization_id)
    if not found.ok:
        return Outcome.failure(found.error)
    organization = found.unwrap()
    item = catalog.load_target(db, target)
    if item is None or not item.active:
        return Outcome.failure(NotFoundError("billing.target_not_found", "Plan or bundle not found."))

    one_time = interval == PriceInterval.ONE_TIME.value or item.interval == PriceInterval.ONE_TIME.value
    price_interval = item.interval if one_time else interval
    price_id = catalog.price_id_for(db, target, price_interval) or (
        item.provider_price_id_monthly if one_time else None
    )
    if not price_id:
        return Outcome.failure(ValidationError("billing.price_unavailable", f"No {interval} price is configured."))

    trial_days: Optional[int] = None
    if isinstance(item, Plan) and not one_time and (item.trial_period_days or 0) > 0:
        if check_trial_eligibility(db, organization_id, item.tool_id).ok:
            trial_days = item.trial_period_days

    customer = await ensure_customer(db, provider, organization)
    if not customer.ok:
        return Outcome.failure(customer.error)

    target_ref = str(target.plan_id or target.bundle_id)
    metadata = {
        "organization_id": str(organization_id),
        "plan_id" if target.plan_id else "bundle_id": target_ref,
        "interval": price_interval,
    }
    try:
        session = await provider.create_checkout_session(
            customer_id=customer.unwrap(),
            price_id=price_id,
            mode="payment" if one_time else "subscription",
            success_url=f"{config.frontend_url}/billing?checkout=success",
            cancel_url=f"{config.frontend_url}/billing?checkout=canceled",
            metadata=metadata,
            trial_period_days=trial_days,
            idempotency_key=f"checkout:{organization_id}:{target_ref}:{price_interval}:{moment:%Y%m%d%H%M}",
        )
    except ProviderError as exc:
        return Outcome.failure(exc)
    return Outcome.success({"sessionId": session.get("id"), "url": session.get("url"), "trialDays": trial_days})


async def create_portal_session(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    *,
    settings: Optional[BillingSettings] = None,
) -> Outcome[str]:
    config = settings or load_billing_settings()
    found = get_organization(db, organization_id)
    if not found.ok:
        return Outcome.failure(found.error)
    organization = found.unwrap()
    if not organization.provider_customer_id:
        return Outcome.failure(NotFoundError("billing.customer_not_found", "Organization has no billing account yet."))
    try:
        session = await provider.create_portal_session(
            customer_id=organization.provider_customer_id,
            return_url=f"{config.frontend_url}/billing",
        )
    except ProviderError as exc:
        return Outcome.failure(exc)
    return Outcome.success(session["url"])


async def list_invoices(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
) -> Outcome[Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]]:
    found = get_organization(db, organization_id)
    if not found.ok:
        return Outcome.failure(found.error)
    customer_id = found.unwrap().provider_customer_id
    if not customer_id:
        return Outcome.success(([], []))
    try:
        invoices = await provider.list_invoices(customer_id)
        payment_methods = await provider.list_payment_methods(customer_id)
    except ProviderError as exc:
        return Outcome.failure(exc)
    return Outcome.success((invoices, payment_methods))


async def start_trial(
    db: Session,
    provider: StripeClient,
    organization_id: uuid.UUID,
    tool_id: uuid.UUID,
    *,
    payment_method_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Outcome[Subscription]:
    """Create a provider trial for the tool's trial plan and mirror it locally."""
    moment = now or utcnow()
    found = get_organization(db, organization_id)
    if not found.ok:
        return Outcome.failure(found.error)
    plan = catalog.trial_plan_for_tool(db, tool_id)
    if plan is None:
        return Outcome.failure(NotFoundError("trial.unavailable", "This tool does not offer a free trial."))
    eligible = check_trial_eligibility(db, organization_id, tool_id)
    if not eligible.ok:
        return Outcome.failure(eligible.error)
    price_id = plan.provider_price_id_monthly or plan.provider_price_id_yearly
    if not price_id:
        return Outcome.failure(ValidationError("billing.price_unavailable", "Trial plan has no provider price."))
    customer = await ensure_customer(db, provider, found.unwrap())
    if not customer.ok:
        return Outcome.failure(customer.error)

    try:
        remote = await provider.create_trial_subscription(
            customer_id=customer.unwrap(),
            price_id=price_id,
            trial_period_days=plan.trial_period_days,
            metadata={"organization_id": str(organization_id), "plan_id": str(plan.id), "auto_cancel_trial": "true"},
            default_payment_method=payment_method_id,
            idempotency_key=f"trial:{organization_id}:{tool_id}",
        )
    except ProviderError as exc:
        return Outcome.failure(exc)

    snapshot = RemoteSubscription.from_provider(remote)
    outcome = await apply_remote_snapshot(db, provider, snapshot, now=moment, organization_id=organization_id)
    if not outcome.ok:
        return Outcome.failure(outcome.error)
    result = outcome.unwrap()
    if result.duplicate_card:
        return Outcome.failure(
            ConflictError(
                "trial.duplicate_card",
                "This card has already been used for a free trial of this tool.",
                detail={"subscriptionId": str(result.subscription_id)},
            )
        )
    return Outcome.success(db.get(Subscription, result.subscription_id, populate_existing=True))


# Sweeps


def overdue_subscription_ids(db: Session, *, now: datetime, grace_days: int) -> List[uuid.UUID]:
    cutoff = now - timedelta(days=grace_days)
    stmt = select(Subscription.id).where(
        Subscription.status == SubscriptionStatus.PAST_DUE.value,
        Subscription.provider_subscription_id.is_not(None),
        or_(
            Subscription.last_payment_failure_at <= cutoff,
            and_(Subscription.last_payment_failure_at.is_(None), Subscription.current_period_end <= cutoff),
        ),
    )
    return list(db.execute(stmt).scalars())


async def cancel_overdue_subscriptions(
    db: Session,
    provider: StripeClient,
    *,
    now: Optional[datetime] = None,
) -> OverdueSweep:
    """Cancel past-due subscriptions whose grace period ran out.

    Provider first: a failed provider call leaves the row untouched and the
    next sweep tick tries again.
    """
    moment = now or utcnow()
    grace_days = grace_period_days(db)
    sweep = OverdueSweep()
    for subscription_id in overdue_subscription_ids(db, now=moment, grace_days=grace_days):
        sweep.examined += 1
        subscription = db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None or subscription.status != SubscriptionStatus.PAST_DUE.value:
            continue
        try:
            remote = await provider.cancel_immediately(
                subscription.provider_subscription_id,
                idempotency_key=f"auto-cancel:{subscription.id}",
            )
        except ProviderError as exc:
            sweep.failed += 1
            sweep.failures.append(str(subscription.id))
            logger.warning("Auto-cancel of overdue subscription %s failed: %s", subscription.id, exc.message)
            continue
        outcome = _reconciled(db, remote, moment, cancellation_reason=CancellationReason.AUTO_CANCEL_PAST_DUE)
        if not outcome.ok:
            sweep.failed += 1
            sweep.failures.append(str(subscription.id))
            logger.warning("Auto-cancel of %s not mirrored locally: %s", subscription.id, outcome.error.code)
            continue
        sweep.canceled += 1
        record_billing_audit(
            db,
            action="subscription.auto_canceled_past_due",
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
            extra={"grace_period_days": grace_days},
            now=moment,
        )
    record_sweep_action("overdue", "canceled", sweep.canceled)
    record_sweep_action("overdue", "failed", sweep.failed)
    if sweep.examined:
        logger.info(
            "Overdue sweep: examined=%d canceled=%d failed=%d", sweep.examined, sweep.canceled, sweep.failed
        )
    return sweep


__all__ = [
    "BillingOverview",
    "OverdueSweep",
    "TrialEligibility",
    "apply_remote_snapshot",
    "cancel_overdue_subscriptions",
    "cancel_scheduled_downgrade",
    "cancel_subscription",
    "cancel_trial",
    "change_plan",
    "create_checkout_session",
    "create_portal_session",
    "ensure_customer",
    "get_organization",
    "list_billing_overview",
    "list_invoices",
    "overdue_subscription_ids",
    "resume_subscription",
    "start_trial",
    "sync_organization",
    "sync_subscription",
    "trial_eligibility",
]
