"""Customer-facing billing endpoints: subscriptions, plan changes, checkout and trials."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from schemas.api.billing import (
    BillingOverviewResponse,
    BillingTargetRequest,
    CheckoutCreateRequest,
    CheckoutCreateResponse,
    EntitlementListResponse,
    InvoiceListResponse,
    PortalSessionResponse,
    StartTrialRequest,
    SubscriptionSchema,
    SyncResponse,
    TrialEligibilityResponse,
)
from services import billing_service
from services.billing.reconciliation import find_subscription
from services.billing.settings import BillingSettings
from services.billing.state_machine import ensure_owner
from services.billing.usage_counter import list_entitlements
from services.billing_serializers import (
    serialize_entitlements,
    serialize_invoice,
    serialize_overview,
    serialize_payment_method,
    serialize_subscription,
)
from services.payments.stripe_client import StripeClient
from web.deps import get_billing_provider, get_billing_settings, get_db, get_organization_id, raise_billing_error

router = APIRouter(prefix="/billing", tags=["Billing"])

logger = logging.getLogger(__name__)


@router.get(
    "/subscriptions",
    response_model=BillingOverviewResponse,
    summary="List the organization's subscriptions and one-time purchases",
)
def read_subscriptions(
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
) -> BillingOverviewResponse:
    outcome = billing_service.list_billing_overview(db, organization_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    overview = outcome.unwrap()
    return serialize_overview(overview.subscriptions, overview.purchases)


@router.post(
    "/subscriptions/sync",
    response_model=SyncResponse,
    summary="Re-fetch every provider subscription of the organization",
)
async def sync_subscriptions(
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SyncResponse:
    outcome = await billing_service.sync_organization(db, provider, organization_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    results = outcome.unwrap()
    overview = billing_service.list_billing_overview(db, organization_id).unwrap()
    return SyncResponse(
        synced=len(results),
        subscriptions=[serialize_subscription(item) for item in overview.subscriptions],
    )


@router.post(
    "/subscriptions/{provider_subscription_id}/sync",
    response_model=SubscriptionSchema,
    summary="Re-fetch one provider subscription",
)
async def sync_one_subscription(
    provider_subscription_id: str,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    owned = ensure_owner(find_subscription(db, provider_subscription_id), organization_id)
    if not owned.ok:
        raise_billing_error(owned.error)
    outcome = await billing_service.sync_subscription(db, provider, provider_subscription_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(find_subscription(db, provider_subscription_id))


@router.post(
    "/subscriptions/{provider_subscription_id}/cancel",
    response_model=SubscriptionSchema,
    summary="Cancel at period end (immediately for free trials)",
)
async def cancel_subscription(
    provider_subscription_id: str,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    outcome = await billing_service.cancel_subscription(db, provider, organization_id, provider_subscription_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(outcome.unwrap())


@router.post(
    "/subscriptions/{provider_subscription_id}/resume",
    response_model=SubscriptionSchema,
    summary="Undo a pending period-end cancellation",
)
async def resume_subscription(
    provider_subscription_id: str,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    outcome = await billing_service.resume_subscription(db, provider, organization_id, provider_subscription_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(outcome.unwrap())


@router.post(
    "/subscriptions/{provider_subscription_id}/cancel-trial",
    response_model=SubscriptionSchema,
    summary="End a trial immediately",
)
async def cancel_trial(
    provider_subscription_id: str,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    outcome = await billing_service.cancel_trial(db, provider, organization_id, provider_subscription_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(outcome.unwrap())


@router.post(
    "/subscriptions/{provider_subscription_id}/change",
    response_model=SubscriptionSchema,
    summary="Upgrade now or schedule a downgrade for the period end",
)
async def change_plan(
    provider_subscription_id: str,
    payload: BillingTargetRequest,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    outcome = await billing_service.change_plan(
        db,
        provider,
        organization_id,
        provider_subscription_id,
        plan_id=payload.planId,
        bundle_id=payload.bundleId,
    )
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(outcome.unwrap())


@router.delete(
    "/subscriptions/{provider_subscription_id}/scheduled-change",
    response_model=SubscriptionSchema,
    summary="Cancel a scheduled downgrade",
)
async def cancel_scheduled_change(
    provider_subscription_id: str,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    outcome = await billing_service.cancel_scheduled_downgrade(db, provider, organization_id, provider_subscription_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(outcome.unwrap())


@router.post(
    "/checkout",
    response_model=CheckoutCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a hosted checkout session for a plan or bundle",
)
async def create_checkout(
    payload: CheckoutCreateRequest,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
    settings: BillingSettings = Depends(get_billing_settings),
) -> CheckoutCreateResponse:
    outcome = await billing_service.create_checkout_session(
        db,
        provider,
        organization_id,
        plan_id=payload.planId,
        bundle_id=payload.bundleId,
        interval=payload.interval,
        settings=settings,
    )
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return CheckoutCreateResponse(**outcome.unwrap())


@router.post(
    "/portal",
    response_model=PortalSessionResponse,
    summary="Create a customer portal session",
)
async def create_portal(
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
    settings: BillingSettings = Depends(get_billing_settings),
) -> PortalSessionResponse:
    outcome = await billing_service.create_portal_session(db, provider, organization_id, settings=settings)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return PortalSessionResponse(url=outcome.unwrap())


@router.get(
    "/invoices",
    response_model=InvoiceListResponse,
    summary="List invoices and saved payment methods",
)
async def read_invoices(
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> InvoiceListResponse:
    outcome = await billing_service.list_invoices(db, provider, organization_id)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    invoices, payment_methods = outcome.unwrap()
    return InvoiceListResponse(
        invoices=[serialize_invoice(item) for item in invoices],
        paymentMethods=[serialize_payment_method(item) for item in payment_methods],
    )


@router.get(
    "/trials/{tool_id}/eligibility",
    response_model=TrialEligibilityResponse,
    summary="Check whether the organization can start a free trial",
)
def read_trial_eligibility(
    tool_id: uuid.UUID,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
) -> TrialEligibilityResponse:
    result = billing_service.trial_eligibility(db, organization_id, tool_id).unwrap()
    return TrialEligibilityResponse(
        toolId=result.tool_id,
        eligible=result.eligible,
        trialDays=result.trial_days,
        reason=result.reason,
    )


@router.post(
    "/trials",
    response_model=SubscriptionSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Start a free trial of a tool",
)
async def start_trial(
    payload: StartTrialRequest,
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
) -> SubscriptionSchema:
    outcome = await billing_service.start_trial(
        db,
        provider,
        organization_id,
        payload.toolId,
        payment_method_id=payload.paymentMethodId,
    )
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_subscription(outcome.unwrap())


@router.get(
    "/entitlements",
    response_model=EntitlementListResponse,
    summary="List the organization's resolved entitlements",
)
def read_entitlements(
    organization_id: uuid.UUID = Depends(get_organization_id),
    db: Session = Depends(get_db),
) -> EntitlementListResponse:
    return EntitlementListResponse(
        organizationId=organization_id,
        entitlements=serialize_entitlements(list_entitlements(db, organization_id)),
    )


__all__ = ["router"]
