"""Recompute ``organization_entitlements`` from an organisation's live subscriptions.

The resolver owns ``limit_amount``, ``reset_period``, ``tool_id`` and
``is_enabled``. It never writes ``usage_amount`` or ``last_reset_at`` on existing
rows; those belong to :mod:`services.billing.usage_counter`. Re-running it with
unchanged inputs issues no writes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.billing_constants import ENTITLING_STATUSES, RESET_PERIOD_PERMISSIVENESS, ResetPeriod, SubscriptionStatus
from models.entitlement import OrganizationEntitlement
from models.subscription import Subscription
from services.billing.catalog import BillingTarget, LimitRow, limits_for_plans, plan_ids_for_target
from services.billing.clock import ensure_utc, utcnow
from services.billing.settings import grace_period_days

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedLimit:
    feature_id: uuid.UUID
    tool_id: uuid.UUID
    limit_amount: Optional[int]
    reset_period: Optional[str]


@dataclass
class ResolutionReport:
    organization_id: uuid.UUID
    created: int = 0
    updated: int = 0
    disabled: int = 0
    unchanged: int = 0

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.disabled


def is_entitling(subscription: Subscription, now: datetime, grace_days: int) -> bool:
    """Whether ``subscription`` currently grants its features."""
    try:
        status = SubscriptionStatus(subscription.status)
    except ValueError:
        return False
    if status not in ENTITLING_STATUSES:
        return False

    grace = timedelta(days=grace_days)
    period_end = ensure_utc(subscription.current_period_end)

    if status is SubscriptionStatus.PAST_DUE:
        failed_at = ensure_utc(subscription.last_payment_failure_at) or period_end
        if failed_at is not None and failed_at + grace <= now:
            return False

    if period_end is not None:
        if subscription.cancel_at_period_end and period_end <= now:
            return False
        # Renewal never arrived.
        if period_end + grace <= now:
            return False
    return True


def _permissiveness(limit: ResolvedLimit) -> tuple:
    unlimited = limit.limit_amount is None
    amount = limit.limit_amount if limit.limit_amount is not None else 0
    try:
        period_rank = RESET_PERIOD_PERMISSIVENESS[ResetPeriod(limit.reset_period)]
    except ValueError:
        period_rank = 0
    return (unlimited, amount, period_rank)


def merge_limits(rows: Iterable[LimitRow]) -> Dict[uuid.UUID, ResolvedLimit]:
    """Most permissive limit per feature: unlimited beats finite, higher beats lower."""
    merged: Dict[uuid.UUID, ResolvedLimit] = {}
    for row in rows:
        candidate = ResolvedLimit(
            feature_id=row.feature_id,
            tool_id=row.tool_id,
            limit_amount=row.default_limit,
            reset_period=row.reset_period,
        )
        current = merged.get(row.feature_id)
        if current is None or _permissiveness(candidate) > _permissiveness(current):
            merged[row.feature_id] = candidate
    return merged


def entitling_subscriptions(db: Session, organization_id: uuid.UUID, now: datetime, grace_days: int) -> List[Subscription]:
    stmt = select(Subscription).where(
        Subscription.organization_id == organization_id,
        Subscription.status.in_([status.value for status in ENTITLING_STATUSES]),
    )
    rows = db.execute(stmt.execution_options(populate_existing=True)).scalars().all()
    return [row for row in rows if is_entitling(row, now, grace_days)]


def compute_entitlements(db: Session, organization_id: uuid.UUID, *, now: Optional[datetime] = None) -> Dict[uuid.UUID, ResolvedLimit]:
    moment = now or utcnow()
    grace_days = grace_period_days(db)
    plan_ids: List[uuid.UUID] = []
    for subscription in entitling_subscriptions(db, organization_id, moment, grace_days):
        target = BillingTarget(plan_id=subscription.plan_id) if subscription.plan_id else BillingTarget(bundle_id=subscription.bundle_id)
        plan_ids.extend(plan_ids_for_target(db, target))
    return merge_limits(limits_for_plans(db, plan_ids))


def _write(db: Session, organization_id: uuid.UUID, resolved: Dict[uuid.UUID, ResolvedLimit], now: datetime) -> ResolutionReport:
    report = ResolutionReport(organization_id=organization_id)
    stmt = select(OrganizationEntitlement).where(OrganizationEntitlement.organization_id == organization_id)
    existing = {
        row.feature_id: row
        for row in db.execute(stmt.execution_options(populate_existing=True)).scalars()
    }

    for feature_id, limit in resolved.items():
        row = existing.get(feature_id)
        if row is None:
            db.add(
                OrganizationEntitlement(
                    organization_id=organization_id,
                    tool_id=limit.tool_id,
                    feature_id=feature_id,
                    limit_amount=limit.limit_amount,
                    usage_amount=0,
                    reset_period=limit.reset_period,
                    last_reset_at=now,
                    is_enabled=True,
                )
            )
            report.created += 1
            continue

        changed = False
        if row.limit_amount != limit.limit_amount:
            row.limit_amount = limit.limit_amount
            changed = True
        if row.reset_period != limit.reset_period:
            row.reset_period = limit.reset_period
            changed = True
        if row.tool_id != limit.tool_id:
            row.tool_id = limit.tool_id
            changed = True
        if not row.is_enabled:
            row.is_enabled = True
            changed = True
        if changed:
            report.updated += 1
        else:
            report.unchanged += 1

    for feature_id, row in existing.items():
        if feature_id in resolved:
            continue
        if row.is_enabled:
            row.is_enabled = False
            report.disabled += 1
        else:
            report.unchanged += 1
    return report


def resolve_entitlements(db: Session, organization_id: uuid.UUID, *, now: Optional[datetime] = None) -> ResolutionReport:
    """Upsert the organisation's entitlement rows and commit when anything changed.

    A concurrent resolver inserting the same (organization, feature) row makes
    the first attempt fail on the unique constraint; the second attempt sees
    that row and updates it instead.
    """
    moment = now or utcnow()
    for attempt in range(2):
        resolved = compute_entitlements(db, organization_id, now=moment)
        report = _write(db, organization_id, resolved, moment)
        if report.writes == 0:
            return report
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            logger.info("Concurrent entitlement insert for org=%s; retrying resolution.", organization_id)
            continue
        logger.info(
            "Resolved entitlements for org=%s created=%d updated=%d disabled=%d",
            organization_id,
            report.created,
            report.updated,
            report.disabled,
        )
        return report
    return report  # pragma: no cover - loop always returns or raises


__all__ = [
    "ResolutionReport",
    "ResolvedLimit",
    "compute_entitlements",
    "entitling_subscriptions",
    "is_entitling",
    "merge_limits",
    "resolve_entitlements",
]
