"""Read-only product catalog: tools, features, plans, limits and bundles."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from database import Base


class Tool(Base):
    """A product surface that owns features and plans."""

    __tablename__ = "tools"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(160), nullable=False)
    slug = Column(String(160), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Feature(Base):
    __tablename__ = "features"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tool_id = Column(UUID(as_uuid=True), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(160), nullable=False)
    slug = Column(String(160), nullable=False, unique=True)
    type = Column(String(16), nullable=False, default="metered")
    description = Column(Text, nullable=True)


class Plan(Base):
    """A priced tier of one tool."""

    __tablename__ = "plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(160), nullable=False)
    tool_id = Column(UUID(as_uuid=True), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False, index=True)
    tier = Column(String(16), nullable=False, default="basic")
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    interval = Column(String(16), nullable=False, default="monthly")
    trial_period_days = Column(Integer, nullable=False, default=0)
    is_public = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)
    provider_price_id_monthly = Column(String(128), nullable=True, index=True)
    provider_price_id_yearly = Column(String(128), nullable=True, index=True)


class PlanLimit(Base):
    __tablename__ = "plan_limits"
    __table_args__ = (UniqueConstraint("plan_id", "feature_id", name="uq_plan_limits_plan_feature"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_id = Column(UUID(as_uuid=True), ForeignKey("features.id", ondelete="CASCADE"), nullable=False)
    # NULL means unlimited.
    default_limit = Column(Integer, nullable=True)
    reset_period = Column(String(16), nullable=False, default="monthly")


class BundleGroup(Base):
    """Tier ladder that groups bundles (e.g. Starter/Growth/Scale)."""

    __tablename__ = "bundle_groups"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(160), nullable=False)
    slug = Column(String(160), nullable=False, unique=True)


class Bundle(Base):
    __tablename__ = "bundles"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(160), nullable=False)
    slug = Column(String(160), nullable=False, unique=True)
    bundle_group_id = Column(UUID(as_uuid=True), ForeignKey("bundle_groups.id", ondelete="SET NULL"), nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    interval = Column(String(16), nullable=False, default="monthly")
    active = Column(Boolean, nullable=False, default=True)
    provider_price_id_monthly = Column(String(128), nullable=True, index=True)
    provider_price_id_yearly = Column(String(128), nullable=True, index=True)


class BundlePlan(Base):
    __tablename__ = "bundle_plans"
    __table_args__ = (UniqueConstraint("bundle_id", "plan_id", name="uq_bundle_plans_pair"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bundle_id = Column(UUID(as_uuid=True), ForeignKey("bundles.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id", ondelete="CASCADE"), nullable=False)


__all__ = ["Bundle", "BundleGroup", "BundlePlan", "Feature", "Plan", "PlanLimit", "Tool"]
