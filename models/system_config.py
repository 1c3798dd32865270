from __future__ import annotations

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from database import Base


class SystemConfig(Base):
    """Operator-tunable key/value settings (e.g. ``payment_grace_period_days``)."""

    __tablename__ = "system_configs"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(64), nullable=False, default="general")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = ["SystemConfig"]
