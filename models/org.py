"""Organisation registry shared by subscriptions and entitlements."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from database import Base


class Organization(Base):
    """Billing tenant. Auth and membership live outside this service."""

    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(160), nullable=False)
    slug = Column(String(160), unique=True, nullable=True)
    provider_customer_id = Column(String(128), unique=True, nullable=True)
    billing_email = Column(String(320), nullable=True)
    status = Column(String(32), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["Organization"]
