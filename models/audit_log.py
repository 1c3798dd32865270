from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from database import Base


class BillingAuditLog(Base):
    """System-initiated billing actions (auto-cancels, duplicate cards, scheduled swaps)."""

    __tablename__ = "billing_audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action = Column(String(96), nullable=False, index=True)
    source = Column(String(32), nullable=False, default="system")
    organization_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    subscription_id = Column(UUID(as_uuid=True), nullable=True)
    extra = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


__all__ = ["BillingAuditLog"]
