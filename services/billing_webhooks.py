"""Provider webhook dispatch: claim the event, route it to its handler, record the outcome."""

from __future__ import annotations

import logging
import typing
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Type

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.billing_constants import CancellationReason
from models.org import Organization
from models.subscription import OneTimePurchase
from services.billing.clock import utcnow
from services.billing.errors import BillingError, NotFoundError, Outcome
from services.billing.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ProviderEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    parse_provider_event,
)
from services.billing.reconciliation import find_subscription, record_payment_failure, resolve_organization_id
from services.billing.webhook_store import ClaimResult, claim_event, mark_failed, mark_processed
from services.billing_metrics import record_webhook_event
from services.billing_service import apply_remote_snapshot, sync_subscription
from services.payments.stripe_client import StripeClient

logger = logging.getLogger(__name__)


class WebhookStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookResult:
    status: WebhookStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    error: Optional[BillingError] = None


Handler = Callable[[Session, StripeClient, Any], Awaitable[Outcome[Any]]]


def _uuid_or_none(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def _handle_checkout(db: Session, provider: StripeClient, event: CheckoutSessionCompleted) -> Outcome[Any]:
    organization_id = resolve_organization_id(db, organization_id=event.organization_id, customer_id=event.customer_id)
    if organization_id is None:
        return Outcome.failure(NotFoundError("organization.not_found", "Checkout session has no known organization."))

    organization = db.get(Organization, organization_id)
    if event.customer_id and organization.provider_customer_id != event.customer_id:
        if organization.provider_customer_id:
            logger.warning(
                "Organization %s already linked to customer %s; checkout used %s.",
                organization_id,
                organization.provider_customer_id,
                event.customer_id,
            )
        else:
            organization.provider_customer_id = event.customer_id
            db.commit()

    if event.mode == "payment":
        return _record_purchase(db, organization_id, event)
    if event.subscription_id:
        return await sync_subscription(db, provider, event.subscription_id)
    return Outcome.success(None)


def _record_purchase(db: Session, organization_id: uuid.UUID, event: CheckoutSessionCompleted) -> Outcome[Any]:
    intent_id = event.payment_intent_id or event.session_id
    plan_id = _uuid_or_none(event.metadata.get("plan_id"))
    bundle_id = None if plan_id else _uuid_or_none(event.metadata.get("bundle_id"))
    if plan_id is None and bundle_id is None:
        logger.warning("Payment checkout %s has no plan or bundle in metadata.", event.session_id)
        return Outcome.success(None)
    purchase = OneTimePurchase(
        organization_id=organization_id,
        plan_id=plan_id,
        bundle_id=bundle_id,
        provider_payment_intent_id=intent_id,
        amount_paid=event.amount_total if event.amount_total is not None else Decimal("0"),
        currency=event.currency or "USD",
        status="succeeded",
        created_at=event.created,
    )
    db.add(purchase)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("One-time purchase %s already recorded.", intent_id)
    return Outcome.success(None)


async def _handle_subscription_changed(db: Session, provider: StripeClient, event: SubscriptionChanged) -> Outcome[Any]:
    return await apply_remote_snapshot(db, provider, event.subscription, now=event.created)


async def _handle_subscription_deleted(db: Session, provider: StripeClient, event: SubscriptionDeleted) -> Outcome[Any]:
    reason = CancellationReason.USER_REQUESTED if event.subscription.cancel_at_period_end else CancellationReason.PROVIDER_DELETED
    return await apply_remote_snapshot(db, provider, event.subscription, now=event.created, cancellation_reason=reason)


async def _handle_invoice_failed(db: Session, provider: StripeClient, event: InvoicePaymentFailed) -> Outcome[Any]:
    if not event.subscription_id:
        return Outcome.success(None)
    synced = await sync_subscription(db, provider, event.subscription_id)
    if not synced.ok:
        return synced
    subscription = find_subscription(db, event.subscription_id)
    if subscription is None:
        return synced
    return record_payment_failure(db, subscription.id, event.created)


async def _handle_invoice_succeeded(db: Session, provider: StripeClient, event: InvoicePaymentSucceeded) -> Outcome[Any]:
    if not event.subscription_id:
        return Outcome.success(None)
    return await sync_subscription(db, provider, event.subscription_id)


HANDLERS: Dict[Type[Any], Handler] = {
    CheckoutSessionCompleted: _handle_checkout,
    SubscriptionChanged: _handle_subscription_changed,
    SubscriptionDeleted: _handle_subscription_deleted,
    InvoicePaymentFailed: _handle_invoice_failed,
    InvoicePaymentSucceeded: _handle_invoice_succeeded,
}

_unhandled = set(typing.get_args(ProviderEvent)) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"Provider events without a webhook handler: {sorted(cls.__name__ for cls in _unhandled)}")


async def dispatch_event(db: Session, provider: StripeClient, event: ProviderEvent) -> Outcome[Any]:
    return await HANDLERS[type(event)](db, provider, event)


async def process_webhook(
    db: Session,
    provider: StripeClient,
    payload: Mapping[str, Any],
    *,
    pending_timeout_seconds: int = 300,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """Apply one verified webhook payload at most once.

    Raises ``ValueError`` when a supported event is malformed. Unexpected
    exceptions mark the event FAILED and propagate, so the provider retries.
    """
    moment = now or utcnow()
    event_id = str(payload.get("id") or "")
    event_type = str(payload.get("type") or "")
    context = {"event_id": event_id, "type": event_type}

    event = parse_provider_event(payload)
    if event is None:
        logger.info("Ignoring unsupported webhook event.", extra={"webhook": context})
        record_webhook_event(event_type or "unknown", "ignored")
        return WebhookResult(status=WebhookStatus.IGNORED, event_id=event_id, event_type=event_type)

    claim = claim_event(db, event.event_id, event_type, pending_timeout_seconds=pending_timeout_seconds, now=moment)
    if claim is ClaimResult.DUPLICATE:
        logger.info("Duplicate webhook event skipped.", extra={"webhook": context})
        record_webhook_event(event_type, "duplicate")
        return WebhookResult(status=WebhookStatus.DUPLICATE, event_id=event_id, event_type=event_type)
    if claim is ClaimResult.IN_PROGRESS:
        logger.info("Webhook event already being processed.", extra={"webhook": context})
        record_webhook_event(event_type, "in_progress")
        return WebhookResult(status=WebhookStatus.IN_PROGRESS, event_id=event_id, event_type=event_type)

    try:
        outcome = await dispatch_event(db, provider, event)
    except Exception as exc:
        db.rollback()
        mark_failed(db, event.event_id, f"{exc.__class__.__name__}: {exc}", now=moment)
        record_webhook_event(event_type, "error")
        logger.exception("Webhook handler crashed.", extra={"webhook": context})
        raise

    if not outcome.ok:
        error = outcome.error
        mark_failed(db, event.event_id, f"{error.code}: {error.message}", now=moment)
        record_webhook_event(event_type, "failed")
        logger.warning(
            "Webhook event failed: %s",
            error.code,
            extra={"webhook": {**context, "error": error.code}},
        )
        return WebhookResult(status=WebhookStatus.FAILED, event_id=event_id, event_type=event_type, error=error)

    mark_processed(db, event.event_id, now=moment)
    record_webhook_event(event_type, "processed")
    logger.info("Webhook event processed.", extra={"webhook": context})
    return WebhookResult(status=WebhookStatus.PROCESSED, event_id=event_id, event_type=event_type)


__all__ = ["HANDLERS", "WebhookResult", "WebhookStatus", "dispatch_event", "process_webhook"]
