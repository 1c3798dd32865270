"""Audit trail for actions the engine takes on its own (not on user request)."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.audit_log import BillingAuditLog

logger = logging.getLogger(__name__)


def record_billing_audit(
    db: Session,
    *,
    action: str,
    organization_id: Optional[uuid.UUID] = None,
    subscription_id: Optional[uuid.UUID] = None,
    extra: Optional[Mapping[str, Any]] = None,
    source: str = "system",
    now: Optional[datetime] = None,
) -> None:
    """Persist an audit row in its own short transaction.

    Audit failures are logged and never undo the billing action they describe.
    """
    entry = BillingAuditLog(
        action=action,
        source=source,
        organization_id=organization_id,
        subscription_id=subscription_id,
        extra=dict(extra or {}),
    )
    if now is not None:
        entry.created_at = now
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "Failed to record billing audit action=%s: %s",
            action,
            exc,
            extra={"audit": {"organization_id": str(organization_id), "subscription_id": str(subscription_id)}},
        )


__all__ = ["record_billing_audit"]
