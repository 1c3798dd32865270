"""Helpers for serialising billing rows and provider payloads into API schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Sequence, Tuple

from models.catalog import Feature
from models.entitlement import OrganizationEntitlement
from models.subscription import OneTimePurchase, Subscription
from schemas.api.billing import (
    BillingOverviewResponse,
    EntitlementSchema,
    InvoiceSchema,
    OneTimePurchaseSchema,
    PaymentMethodSchema,
    SubscriptionSchema,
    UsageDecisionResponse,
)
from services.billing.clock import ensure_utc, from_timestamp
from services.billing.usage_counter import UsageDecision, next_reset_at


def serialize_subscription(subscription: Subscription) -> SubscriptionSchema:
    return SubscriptionSchema(
        id=subscription.id,
        organizationId=subscription.organization_id,
        providerSubscriptionId=subscription.provider_subscription_id,
        planId=subscription.plan_id,
        bundleId=subscription.bundle_id,
        status=subscription.status,
        interval=subscription.interval,
        currentPeriodStart=ensure_utc(subscription.current_period_start),
        currentPeriodEnd=ensure_utc(subscription.current_period_end),
        trialStart=ensure_utc(subscription.trial_start),
        trialEnd=ensure_utc(subscription.trial_end),
        cancelAtPeriodEnd=bool(subscription.cancel_at_period_end),
        canceledAt=ensure_utc(subscription.canceled_at),
        cancellationReason=subscription.cancellation_reason,
        upcomingPlanId=subscription.upcoming_plan_id,
        upcomingBundleId=subscription.upcoming_bundle_id,
        version=subscription.version or 1,
    )


def serialize_purchase(purchase: OneTimePurchase) -> OneTimePurchaseSchema:
    return OneTimePurchaseSchema(
        id=purchase.id,
        planId=purchase.plan_id,
        bundleId=purchase.bundle_id,
        providerPaymentIntentId=purchase.provider_payment_intent_id,
        amountPaid=purchase.amount_paid,
        currency=purchase.currency,
        status=purchase.status,
        createdAt=ensure_utc(purchase.created_at),
    )


def serialize_overview(subscriptions: Sequence[Subscription], purchases: Sequence[OneTimePurchase]) -> BillingOverviewResponse:
    return BillingOverviewResponse(
        subscriptions=[serialize_subscription(item) for item in subscriptions],
        purchases=[serialize_purchase(item) for item in purchases],
    )


def serialize_entitlement(row: OrganizationEntitlement, feature: Feature) -> EntitlementSchema:
    usage = row.usage_amount or 0
    remaining = None if row.limit_amount is None else max(row.limit_amount - usage, 0)
    return EntitlementSchema(
        featureSlug=feature.slug,
        featureType=feature.type,
        toolId=row.tool_id,
        isEnabled=bool(row.is_enabled),
        limit=row.limit_amount,
        usage=usage,
        remaining=remaining,
        resetPeriod=row.reset_period,
        lastResetAt=ensure_utc(row.last_reset_at),
        nextResetAt=next_reset_at(row.last_reset_at, row.reset_period),
    )


def serialize_entitlements(rows: Sequence[Tuple[OrganizationEntitlement, Feature]]) -> list:
    return [serialize_entitlement(row, feature) for row, feature in rows]


def serialize_usage_decision(decision: UsageDecision) -> UsageDecisionResponse:
    return UsageDecisionResponse(
        allowed=decision.allowed,
        featureSlug=decision.feature_slug,
        featureType=decision.feature_type,
        limit=decision.limit,
        usage=decision.usage,
        remaining=decision.remaining,
        resetPeriod=decision.reset_period,
        nextResetAt=decision.next_reset_at,
    )


def _minor_units(value: Any) -> Decimal:
    # Provider amounts are integers in the currency's minor unit.
    return (Decimal(int(value or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def serialize_invoice(payload: Mapping[str, Any]) -> InvoiceSchema:
    currency = payload.get("currency")
    return InvoiceSchema(
        id=str(payload.get("id") or ""),
        number=payload.get("number"),
        status=payload.get("status"),
        amountDue=_minor_units(payload.get("amount_due")),
        amountPaid=_minor_units(payload.get("amount_paid")),
        currency=currency.upper() if isinstance(currency, str) else None,
        hostedInvoiceUrl=payload.get("hosted_invoice_url"),
        createdAt=from_timestamp(payload.get("created")),
    )


def serialize_payment_method(payload: Mapping[str, Any]) -> PaymentMethodSchema:
    card = payload.get("card") or {}
    return PaymentMethodSchema(
        id=str(payload.get("id") or ""),
        brand=card.get("brand"),
        last4=card.get("last4"),
        expMonth=card.get("exp_month"),
        expYear=card.get("exp_year"),
    )


__all__ = [
    "serialize_entitlement",
    "serialize_entitlements",
    "serialize_invoice",
    "serialize_overview",
    "serialize_payment_method",
    "serialize_purchase",
    "serialize_subscription",
    "serialize_usage_decision",
]
