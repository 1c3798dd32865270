"""Per-organisation resolved entitlements with usage counters."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from database import Base


class OrganizationEntitlement(Base):
    """One row per (organization, feature).

    ``limit_amount``/``reset_period``/``is_enabled`` are owned by the resolver;
    ``usage_amount``/``last_reset_at`` are owned by the usage counter.
    """

    __tablename__ = "organization_entitlements"
    __table_args__ = (
        UniqueConstraint("organization_id", "feature_id", name="uq_org_entitlements_org_feature"),
        CheckConstraint("usage_amount >= 0", name="ck_org_entitlements_usage_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tool_id = Column(UUID(as_uuid=True), ForeignKey("tools.id", ondelete="CASCADE"), nullable=False)
    feature_id = Column(UUID(as_uuid=True), ForeignKey("features.id", ondelete="CASCADE"), nullable=False)
    limit_amount = Column(Integer, nullable=True)
    usage_amount = Column(Integer, nullable=False, default=0)
    reset_period = Column(String(16), nullable=True)
    last_reset_at = Column(DateTime(timezone=True), nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["OrganizationEntitlement"]
