"""Liveness and billing backlog probes."""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import database
from core.billing_constants import WebhookEventStatus
from models.payments import WebhookEvent

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database(db: Optional[Session] = None) -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    owned = db is None
    session = database.SessionLocal() if owned else db
    try:
        session.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)
    finally:
        if owned:
            session.close()


def webhook_backlog(db: Session) -> Dict[str, int]:
    """Count webhook events still pending or parked as failed."""
    rows = db.execute(
        select(WebhookEvent.status, func.count(WebhookEvent.id))
        .where(WebhookEvent.status.in_([WebhookEventStatus.PENDING.value, WebhookEventStatus.FAILED.value]))
        .group_by(WebhookEvent.status)
    ).all()
    counts = {status_value: int(count) for status_value, count in rows}
    return {
        "pending": counts.get(WebhookEventStatus.PENDING.value, 0),
        "failed": counts.get(WebhookEventStatus.FAILED.value, 0),
    }


@router.get(
    "/status",
    summary="Service runtime status",
    description="Aggregated service health information used by liveness probes.",
)
def read_service_status(db: Session = Depends(database.get_db)):
    db_ok, db_error = ping_database(db)
    payload = {"status": "ok" if db_ok else "degraded", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    return payload


@router.get(
    "/webhooks",
    summary="Webhook processing backlog",
    description="Pending and failed provider events awaiting a redelivery.",
)
def read_webhook_backlog(db: Session = Depends(database.get_db)):
    backlog = webhook_backlog(db)
    return {"status": "ok" if backlog["failed"] == 0 else "degraded", "webhooks": backlog}


__all__ = ["router", "ping_database", "webhook_backlog"]
