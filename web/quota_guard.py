"""FastAPI dependencies that gate routes on entitlements and consume metered usage."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from services.billing.errors import BillingError
from services.billing.usage_counter import UsageDecision, check_entitlement, record_usage
from web.deps import error_status, get_db, get_organization_id

logger = logging.getLogger(__name__)

_PROBLEM_TYPE = "about:blank#billing-quota"


def _raise_quota_exception(*, feature_slug: str, error: BillingError, cost: int) -> None:
    status_code = error_status(error)
    detail = {
        "type": _PROBLEM_TYPE,
        "title": error.message,
        "status": status_code,
        "detail": error.message,
        "code": error.code,
        "quota": {
            "feature": feature_slug,
            "limit": error.detail.get("limit"),
            "usage": error.detail.get("usage"),
            "cost": cost,
        },
    }
    raise HTTPException(status_code=status_code, detail=detail)


def enforce_quota(db: Session, organization_id: uuid.UUID, feature_slug: str, *, cost: int = 1) -> UsageDecision:
    """Consume ``cost`` units of ``feature_slug`` and raise RFC7807 errors when refused."""
    outcome = record_usage(db, organization_id, feature_slug, cost)
    if not outcome.ok:
        logger.info("Quota refused for org=%s feature=%s: %s", organization_id, feature_slug, outcome.error.code)
        _raise_quota_exception(feature_slug=feature_slug, error=outcome.error, cost=cost)
    return outcome.unwrap()


def require_feature(feature_slug: str) -> Callable[..., UsageDecision]:
    """Dependency factory that only checks access, without consuming usage."""

    def _dependency(
        organization_id: uuid.UUID = Depends(get_organization_id),
        db: Session = Depends(get_db),
    ) -> UsageDecision:
        outcome = check_entitlement(db, organization_id, feature_slug)
        if not outcome.ok:
            _raise_quota_exception(feature_slug=feature_slug, error=outcome.error, cost=0)
        decision = outcome.unwrap()
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "type": _PROBLEM_TYPE,
                    "title": "Feature not available",
                    "status": status.HTTP_403_FORBIDDEN,
                    "detail": f"Organization cannot use '{feature_slug}'.",
                    "code": "usage.not_entitled",
                    "quota": {"feature": feature_slug, "limit": decision.limit, "usage": decision.usage, "cost": 0},
                },
            )
        return decision

    return _dependency


def consume_feature(feature_slug: str, *, cost: int = 1) -> Callable[..., UsageDecision]:
    """Dependency factory that records ``cost`` units of usage before the route runs."""

    def _dependency(
        organization_id: uuid.UUID = Depends(get_organization_id),
        db: Session = Depends(get_db),
    ) -> UsageDecision:
        return enforce_quota(db, organization_id, feature_slug, cost=cost)

    return _dependency


__all__ = ["consume_feature", "enforce_quota", "require_feature"]
