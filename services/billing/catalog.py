"""Scoped read helpers over the plan/bundle catalog.

The catalog is configuration owned by admin tooling; the engine only reads it,
always through queries scoped by id, never as an in-memory object graph.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from core.billing_constants import TIER_ORDER, PlanTier, PriceInterval
from models.catalog import Bundle, BundlePlan, Feature, Plan, PlanLimit


@dataclass(frozen=True)
class BillingTarget:
    """Exactly one of ``plan_id``/``bundle_id`` is set."""

    plan_id: Optional[uuid.UUID] = None
    bundle_id: Optional[uuid.UUID] = None

    @property
    def is_plan(self) -> bool:
        return self.plan_id is not None


@dataclass(frozen=True)
class ResolvedPrice:
    target: BillingTarget
    interval: str


@dataclass(frozen=True)
class LimitRow:
    feature_id: uuid.UUID
    tool_id: uuid.UUID
    default_limit: Optional[int]
    reset_period: str


def load_target(db: Session, target: BillingTarget):
    if target.plan_id is not None:
        return db.get(Plan, target.plan_id)
    if target.bundle_id is not None:
        return db.get(Bundle, target.bundle_id)
    return None


def bundle_plan_ids(db: Session, bundle_id: uuid.UUID) -> List[uuid.UUID]:
    rows = db.execute(select(BundlePlan.plan_id).where(BundlePlan.bundle_id == bundle_id)).scalars()
    return list(rows)


def plan_ids_for_target(db: Session, target: BillingTarget) -> List[uuid.UUID]:
    if target.plan_id is not None:
        return [target.plan_id]
    if target.bundle_id is not None:
        return bundle_plan_ids(db, target.bundle_id)
    return []


def tool_ids_for_target(db: Session, target: BillingTarget) -> Set[uuid.UUID]:
    plan_ids = plan_ids_for_target(db, target)
    if not plan_ids:
        return set()
    rows = db.execute(select(Plan.tool_id).where(Plan.id.in_(plan_ids))).scalars()
    return set(rows)


def limits_for_plans(db: Session, plan_ids: Iterable[uuid.UUID]) -> List[LimitRow]:
    ids = list(dict.fromkeys(plan_ids))
    if not ids:
        return []
    stmt = (
        select(PlanLimit.feature_id, Feature.tool_id, PlanLimit.default_limit, PlanLimit.reset_period)
        .join(Feature, Feature.id == PlanLimit.feature_id)
        .where(PlanLimit.plan_id.in_(ids))
    )
    return [LimitRow(feature_id=row[0], tool_id=row[1], default_limit=row[2], reset_period=row[3]) for row in db.execute(stmt)]


def resolve_price_id(db: Session, price_id: Optional[str]) -> Optional[ResolvedPrice]:
    """Map a provider price id back to a plan or bundle (plans win on collision)."""
    if not price_id:
        return None
    plan = db.execute(
        select(Plan).where(
            or_(Plan.provider_price_id_monthly == price_id, Plan.provider_price_id_yearly == price_id)
        )
    ).scalars().first()
    if plan is not None:
        interval = PriceInterval.YEARLY.value if plan.provider_price_id_yearly == price_id else PriceInterval.MONTHLY.value
        return ResolvedPrice(target=BillingTarget(plan_id=plan.id), interval=interval)
    bundle = db.execute(
        select(Bundle).where(
            or_(Bundle.provider_price_id_monthly == price_id, Bundle.provider_price_id_yearly == price_id)
        )
    ).scalars().first()
    if bundle is not None:
        interval = PriceInterval.YEARLY.value if bundle.provider_price_id_yearly == price_id else PriceInterval.MONTHLY.value
        return ResolvedPrice(target=BillingTarget(bundle_id=bundle.id), interval=interval)
    return None


def price_id_for(db: Session, target: BillingTarget, interval: str) -> Optional[str]:
    item = load_target(db, target)
    if item is None:
        return None
    if interval == PriceInterval.YEARLY.value:
        return item.provider_price_id_yearly
    return item.provider_price_id_monthly


def _normalized_monthly_price(price: Optional[Decimal], interval: Optional[str]) -> Decimal:
    amount = Decimal(price or 0)
    if interval == PriceInterval.YEARLY.value:
        return amount / Decimal(12)
    return amount


def target_rank(db: Session, target: BillingTarget) -> Optional[Tuple[Decimal, int]]:
    """Rank used to classify plan changes: monthly-normalized price, then tier."""
    item = load_target(db, target)
    if item is None:
        return None
    price = _normalized_monthly_price(item.price, item.interval)
    tier_order = 0
    if isinstance(item, Plan):
        try:
            tier_order = TIER_ORDER[PlanTier(item.tier)]
        except ValueError:
            tier_order = 0
    return price, tier_order


def trial_plan_for_tool(db: Session, tool_id: uuid.UUID) -> Optional[Plan]:
    stmt = (
        select(Plan)
        .where(Plan.tool_id == tool_id, Plan.active.is_(True), Plan.trial_period_days > 0)
        .order_by(Plan.price.asc())
    )
    return db.execute(stmt).scalars().first()


def is_free_trial_target(db: Session, target: BillingTarget) -> bool:
    """A $0 plan that grants a trial; cancelling it has nothing to refund."""
    item = load_target(db, target)
    if not isinstance(item, Plan):
        return False
    return (item.trial_period_days or 0) > 0 and Decimal(item.price or 0) == 0


def feature_by_slug(db: Session, slug: str) -> Optional[Feature]:
    return db.execute(select(Feature).where(Feature.slug == slug)).scalars().first()


def features_by_id(db: Session, feature_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Feature]:
    if not feature_ids:
        return {}
    rows = db.execute(select(Feature).where(Feature.id.in_(list(feature_ids)))).scalars()
    return {row.id: row for row in rows}


__all__ = [
    "BillingTarget",
    "LimitRow",
    "ResolvedPrice",
    "bundle_plan_ids",
    "feature_by_slug",
    "features_by_id",
    "is_free_trial_target",
    "limits_for_plans",
    "load_target",
    "plan_ids_for_target",
    "price_id_for",
    "resolve_price_id",
    "target_rank",
    "tool_ids_for_target",
    "trial_plan_for_tool",
]
