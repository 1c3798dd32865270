"""Feature gating and metered usage recording with lazy period resets.

Resets are computed on read: when ``now`` has passed one calendar month (or
year) after ``last_reset_at``, the counter is zeroed with a compare-and-swap on
the observed ``last_reset_at`` so concurrent callers reset it exactly once.
Increments are a single conditional ``UPDATE`` that only matches while the new
total stays within the limit, so a rejected call never leaves a partial write.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from core.billing_constants import FeatureType, ResetPeriod
from models.catalog import Feature
from models.entitlement import OrganizationEntitlement
from services.billing.catalog import feature_by_slug
from services.billing.clock import add_months, ensure_utc, utcnow
from services.billing.errors import LimitExceededError, NotFoundError, Outcome, ValidationError
from services.billing_metrics import record_usage_decision

logger = logging.getLogger(__name__)

_RESET_MONTHS = {ResetPeriod.MONTHLY.value: 1, ResetPeriod.YEARLY.value: 12}


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    feature_slug: str
    feature_type: str
    limit: Optional[int]
    usage: int
    remaining: Optional[int]
    reset_period: Optional[str]
    last_reset_at: Optional[datetime]
    next_reset_at: Optional[datetime]


def next_reset_at(last_reset_at: Optional[datetime], reset_period: Optional[str]) -> Optional[datetime]:
    months = _RESET_MONTHS.get(reset_period or "")
    anchor = ensure_utc(last_reset_at)
    if months is None or anchor is None:
        return None
    return add_months(anchor, months)


def reset_due(row: OrganizationEntitlement, now: datetime) -> bool:
    if (row.reset_period or ResetPeriod.NEVER.value) not in _RESET_MONTHS:
        return False
    if row.last_reset_at is None:
        return True
    boundary = next_reset_at(row.last_reset_at, row.reset_period)
    return boundary is not None and now >= boundary


def _decision(row: Optional[OrganizationEntitlement], feature: Feature, *, allowed: bool) -> UsageDecision:
    if row is None:
        return UsageDecision(
            allowed=allowed,
            feature_slug=feature.slug,
            feature_type=feature.type,
            limit=None,
            usage=0,
            remaining=None,
            reset_period=None,
            last_reset_at=None,
            next_reset_at=None,
        )
    usage = row.usage_amount or 0
    remaining = None if row.limit_amount is None else max(row.limit_amount - usage, 0)
    return UsageDecision(
        allowed=allowed,
        feature_slug=feature.slug,
        feature_type=feature.type,
        limit=row.limit_amount,
        usage=usage,
        remaining=remaining,
        reset_period=row.reset_period,
        last_reset_at=ensure_utc(row.last_reset_at),
        next_reset_at=next_reset_at(row.last_reset_at, row.reset_period),
    )


def _load_row(db: Session, organization_id: uuid.UUID, feature_id: uuid.UUID, *, lock: bool) -> Optional[OrganizationEntitlement]:
    stmt = select(OrganizationEntitlement).where(
        OrganizationEntitlement.organization_id == organization_id,
        OrganizationEntitlement.feature_id == feature_id,
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt.execution_options(populate_existing=True)).scalars().first()


def _apply_lazy_reset(db: Session, row: OrganizationEntitlement, now: datetime) -> bool:
    """Zero the counter if a period boundary passed. Commits its own transaction."""
    if not reset_due(row, now):
        return False
    observed = row.last_reset_at
    condition = (
        OrganizationEntitlement.last_reset_at.is_(None)
        if observed is None
        else OrganizationEntitlement.last_reset_at == observed
    )
    result = db.execute(
        update(OrganizationEntitlement)
        .where(OrganizationEntitlement.id == row.id, condition)
        .values(usage_amount=0, last_reset_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(
            "Reset usage for org=%s feature=%s (period=%s).",
            row.organization_id,
            row.feature_id,
            row.reset_period,
        )
    db.refresh(row)
    return bool(result.rowcount)


def _resolve_feature(db: Session, feature_slug: str) -> Outcome[Feature]:
    feature = feature_by_slug(db, feature_slug)
    if feature is None:
        return Outcome.failure(NotFoundError("feature.not_found", f"Unknown feature '{feature_slug}'."))
    return Outcome.success(feature)


def check_entitlement(
    db: Session,
    organization_id: uuid.UUID,
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
) -> Outcome[UsageDecision]:
    """Pass/fail for a feature. Boolean features only need an enabled row."""
    moment = now or utcnow()
    looked_up = _resolve_feature(db, feature_slug)
    if not looked_up.ok:
        return Outcome.failure(looked_up.error)
    feature = looked_up.unwrap()

    row = _load_row(db, organization_id, feature.id, lock=False)
    if row is None or not row.is_enabled:
        record_usage_decision("check", False)
        return Outcome.success(_decision(row, feature, allowed=False))

    _apply_lazy_reset(db, row, moment)
    if feature.type == FeatureType.BOOLEAN.value:
        allowed = True
    else:
        allowed = row.limit_amount is None or (row.usage_amount or 0) < row.limit_amount
    record_usage_decision("check", allowed)
    return Outcome.success(_decision(row, feature, allowed=allowed))


def record_usage(
    db: Session,
    organization_id: uuid.UUID,
    feature_slug: str,
    amount: int = 1,
    *,
    now: Optional[datetime] = None,
) -> Outcome[UsageDecision]:
    """Atomically add ``amount`` to the counter or fail with ``LimitExceededError``."""
    if amount <= 0:
        return Outcome.failure(ValidationError("usage.invalid_amount", "Usage amount must be positive."))
    moment = now or utcnow()
    looked_up = _resolve_feature(db, feature_slug)
    if not looked_up.ok:
        return Outcome.failure(looked_up.error)
    feature = looked_up.unwrap()

    row = _load_row(db, organization_id, feature.id, lock=True)
    if row is None or not row.is_enabled:
        db.rollback()
        record_usage_decision("record", False)
        return Outcome.failure(
            LimitExceededError("usage.not_entitled", f"Organization is not entitled to '{feature_slug}'.")
        )

    if _apply_lazy_reset(db, row, moment):
        row = _load_row(db, organization_id, feature.id, lock=True)

    if feature.type == FeatureType.BOOLEAN.value:
        db.commit()
        record_usage_decision("record", True)
        return Outcome.success(_decision(row, feature, allowed=True))

    table = OrganizationEntitlement
    result = db.execute(
        update(table)
        .where(
            table.id == row.id,
            table.is_enabled.is_(True),
            or_(table.limit_amount.is_(None), table.usage_amount + amount <= table.limit_amount),
        )
        .values(usage_amount=table.usage_amount + amount, updated_at=moment)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(row)
        record_usage_decision("record", False)
        logger.info(
            "Usage limit reached for org=%s feature=%s (usage=%s limit=%s amount=%d).",
            organization_id,
            feature_slug,
            row.usage_amount,
            row.limit_amount,
            amount,
        )
        return Outcome.failure(
            LimitExceededError(
                "usage.limit_exceeded",
                f"Usage limit reached for '{feature_slug}'.",
                detail={"limit": row.limit_amount, "usage": row.usage_amount, "requested": amount},
            )
        )
    db.commit()
    db.refresh(row)
    record_usage_decision("record", True)
    return Outcome.success(_decision(row, feature, allowed=True))


def list_entitlements(db: Session, organization_id: uuid.UUID) -> List[Tuple[OrganizationEntitlement, Feature]]:
    """Every entitlement row of the organisation with its feature, disabled rows included."""
    stmt = (
        select(OrganizationEntitlement, Feature)
        .join(Feature, Feature.id == OrganizationEntitlement.feature_id)
        .where(OrganizationEntitlement.organization_id == organization_id)
        .order_by(Feature.slug)
    )
    return [(row, feature) for row, feature in db.execute(stmt).all()]


__all__ = ["UsageDecision", "check_entitlement", "list_entitlements", "next_reset_at", "record_usage", "reset_due"]
