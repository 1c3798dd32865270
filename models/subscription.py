"""Subscriptions and one-time purchases mirrored from the payment provider."""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from database import Base

_EXACTLY_ONE_TARGET = (
    "(plan_id IS NOT NULL AND bundle_id IS NULL) OR (plan_id IS NULL AND bundle_id IS NOT NULL)"
)


class Subscription(Base):
    """Local mirror of a provider subscription.

    ``status`` and the period/trial timestamps are only written by the
    reconciliation path. ``version`` is the optimistic-concurrency token: every
    flush issues ``UPDATE ... WHERE version = :seen`` and raises
    ``StaleDataError`` when another writer got there first.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint(_EXACTLY_ONE_TARGET, name="ck_subscriptions_one_target"),
        CheckConstraint(
            "upcoming_plan_id IS NULL OR upcoming_bundle_id IS NULL",
            name="ck_subscriptions_one_upcoming_target",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=True)
    bundle_id = Column(UUID(as_uuid=True), ForeignKey("bundles.id"), nullable=True)
    provider_subscription_id = Column(String(128), unique=True, nullable=True)
    provider_customer_id = Column(String(128), nullable=True, index=True)
    provider_schedule_id = Column(String(128), nullable=True)
    status = Column(String(16), nullable=False, default="incomplete", index=True)
    interval = Column(String(16), nullable=False, default="monthly")
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(32), nullable=True)
    upcoming_plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=True)
    upcoming_bundle_id = Column(UUID(as_uuid=True), ForeignKey("bundles.id"), nullable=True)
    card_fingerprint = Column(String(128), nullable=True)
    last_payment_failure_at = Column(DateTime(timezone=True), nullable=True)
    provider_synced_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}


class OneTimePurchase(Base):
    __tablename__ = "one_time_purchases"
    __table_args__ = (CheckConstraint(_EXACTLY_ONE_TARGET, name="ck_one_time_purchases_one_target"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=True)
    bundle_id = Column(UUID(as_uuid=True), ForeignKey("bundles.id"), nullable=True)
    provider_payment_intent_id = Column(String(128), unique=True, nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(32), nullable=False, default="succeeded")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = ["OneTimePurchase", "Subscription"]
