"""Service-to-service entitlement endpoints guarded by ``X-Internal-Api-Key``."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from schemas.api.billing import (
    EntitlementListResponse,
    FeatureCheckRequest,
    FeatureConsumeRequest,
    UsageDecisionResponse,
)
from services.billing.entitlement_resolver import resolve_entitlements
from services.billing.usage_counter import check_entitlement, list_entitlements, record_usage
from services.billing_serializers import serialize_entitlements, serialize_usage_decision
from services.billing_service import get_organization
from web.deps import get_db, raise_billing_error, require_internal_api_key

router = APIRouter(prefix="/internal", tags=["Internal"], dependencies=[Depends(require_internal_api_key)])


@router.get(
    "/organizations/{organization_id}/entitlements",
    response_model=EntitlementListResponse,
    summary="Read an organization's entitlements",
)
def read_entitlements(organization_id: uuid.UUID, db: Session = Depends(get_db)) -> EntitlementListResponse:
    found = get_organization(db, organization_id)
    if not found.ok:
        raise_billing_error(found.error)
    return EntitlementListResponse(
        organizationId=organization_id,
        entitlements=serialize_entitlements(list_entitlements(db, organization_id)),
    )


@router.post(
    "/organizations/{organization_id}/entitlements/resolve",
    response_model=EntitlementListResponse,
    summary="Recompute an organization's entitlements from its subscriptions",
)
def resolve_organization_entitlements(organization_id: uuid.UUID, db: Session = Depends(get_db)) -> EntitlementListResponse:
    found = get_organization(db, organization_id)
    if not found.ok:
        raise_billing_error(found.error)
    resolve_entitlements(db, organization_id)
    return EntitlementListResponse(
        organizationId=organization_id,
        entitlements=serialize_entitlements(list_entitlements(db, organization_id)),
    )


@router.post(
    "/organizations/{organization_id}/features/check",
    response_model=UsageDecisionResponse,
    summary="Check whether a feature is available",
)
def check_feature(
    organization_id: uuid.UUID,
    payload: FeatureCheckRequest,
    db: Session = Depends(get_db),
) -> UsageDecisionResponse:
    outcome = check_entitlement(db, organization_id, payload.featureSlug)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_usage_decision(outcome.unwrap())


@router.post(
    "/organizations/{organization_id}/features/consume",
    response_model=UsageDecisionResponse,
    summary="Record usage of a metered feature",
)
def consume_feature(
    organization_id: uuid.UUID,
    payload: FeatureConsumeRequest,
    db: Session = Depends(get_db),
) -> UsageDecisionResponse:
    outcome = record_usage(db, organization_id, payload.featureSlug, payload.amount)
    if not outcome.ok:
        raise_billing_error(outcome.error)
    return serialize_usage_decision(outcome.unwrap())


__all__ = ["router"]
