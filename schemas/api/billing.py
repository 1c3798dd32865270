"""Billing API schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from core.billing_constants import SubscriptionStatus

BillingIntervalLiteral = Literal["monthly", "yearly", "one_time"]


class SubscriptionSchema(BaseModel):
    id: UUID
    organizationId: UUID
    providerSubscriptionId: Optional[str] = Field(default=None, description="Subscription id at the payment provider.")
    planId: Optional[UUID] = None
    bundleId: Optional[UUID] = None
    status: SubscriptionStatus
    interval: Optional[str] = None
    currentPeriodStart: Optional[datetime] = None
    currentPeriodEnd: Optional[datetime] = None
    trialStart: Optional[datetime] = None
    trialEnd: Optional[datetime] = None
    cancelAtPeriodEnd: bool = False
    canceledAt: Optional[datetime] = None
    cancellationReason: Optional[str] = None
    upcomingPlanId: Optional[UUID] = Field(default=None, description="Plan that takes over at the next period boundary.")
    upcomingBundleId: Optional[UUID] = Field(default=None, description="Bundle that takes over at the next period boundary.")
    version: int = Field(..., description="Optimistic concurrency version of the local row.")


class OneTimePurchaseSchema(BaseModel):
    id: UUID
    planId: Optional[UUID] = None
    bundleId: Optional[UUID] = None
    providerPaymentIntentId: str
    amountPaid: Decimal
    currency: str
    status: str
    createdAt: Optional[datetime] = None


class BillingOverviewResponse(BaseModel):
    subscriptions: List[SubscriptionSchema] = Field(default_factory=list)
    purchases: List[OneTimePurchaseSchema] = Field(default_factory=list)


class BillingTargetRequest(BaseModel):
    planId: Optional[UUID] = Field(default=None, description="Target plan; mutually exclusive with bundleId.")
    bundleId: Optional[UUID] = Field(default=None, description="Target bundle; mutually exclusive with planId.")


class CheckoutCreateRequest(BillingTargetRequest):
    interval: BillingIntervalLiteral = Field(default="monthly", description="Billing interval for the checkout.")


class CheckoutCreateResponse(BaseModel):
    sessionId: Optional[str] = None
    url: Optional[str] = Field(default=None, description="Hosted checkout URL to redirect the customer to.")
    trialDays: Optional[int] = Field(default=None, description="Trial length granted by this checkout, if any.")


class PortalSessionResponse(BaseModel):
    url: str = Field(..., description="Customer portal URL.")


class InvoiceSchema(BaseModel):
    id: str
    number: Optional[str] = None
    status: Optional[str] = None
    amountDue: Decimal = Decimal("0")
    amountPaid: Decimal = Decimal("0")
    currency: Optional[str] = None
    hostedInvoiceUrl: Optional[str] = None
    createdAt: Optional[datetime] = None


class PaymentMethodSchema(BaseModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceSchema] = Field(default_factory=list)
    paymentMethods: List[PaymentMethodSchema] = Field(default_factory=list)


class TrialEligibilityResponse(BaseModel):
    toolId: UUID
    eligible: bool
    trialDays: int = 0
    reason: Optional[str] = Field(default=None, description="Error code explaining why the trial is unavailable.")


class StartTrialRequest(BaseModel):
    toolId: UUID
    paymentMethodId: Optional[str] = Field(default=None, description="Provider payment method to attach to the trial.")


class SyncResponse(BaseModel):
    synced: int = Field(..., description="Number of provider subscriptions reconciled.")
    subscriptions: List[SubscriptionSchema] = Field(default_factory=list)


class EntitlementSchema(BaseModel):
    featureSlug: str
    featureType: str
    toolId: UUID
    isEnabled: bool
    limit: Optional[int] = Field(default=None, description="Null means unlimited.")
    usage: int = 0
    remaining: Optional[int] = None
    resetPeriod: str
    lastResetAt: Optional[datetime] = None
    nextResetAt: Optional[datetime] = None


class EntitlementListResponse(BaseModel):
    organizationId: UUID
    entitlements: List[EntitlementSchema] = Field(default_factory=list)


class FeatureCheckRequest(BaseModel):
    featureSlug: str = Field(..., min_length=1, description="Feature slug to check.")


class FeatureConsumeRequest(FeatureCheckRequest):
    amount: int = Field(default=1, ge=1, description="Units of usage to record.")


class UsageDecisionResponse(BaseModel):
    allowed: bool
    featureSlug: str
    featureType: str
    limit: Optional[int] = None
    usage: int = 0
    remaining: Optional[int] = None
    resetPeriod: Optional[str] = None
    nextResetAt: Optional[datetime] = None


class WebhookAckResponse(BaseModel):
    received: bool = True
    status: str


__all__ = [
    "BillingIntervalLiteral",
    "BillingOverviewResponse",
    "BillingTargetRequest",
    "CheckoutCreateRequest",
    "CheckoutCreateResponse",
    "EntitlementListResponse",
    "EntitlementSchema",
    "FeatureCheckRequest",
    "FeatureConsumeRequest",
    "InvoiceListResponse",
    "InvoiceSchema",
    "OneTimePurchaseSchema",
    "PaymentMethodSchema",
    "PortalSessionResponse",
    "StartTrialRequest",
    "SubscriptionSchema",
    "SyncResponse",
    "TrialEligibilityResponse",
    "UsageDecisionResponse",
    "WebhookAckResponse",
]
