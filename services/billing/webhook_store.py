"""Processed-event log that makes webhook delivery effectively once.

``claim_event`` inserts a PENDING row keyed by the provider event id. A
redelivery of a PROCESSED event is a duplicate; a FAILED event, or one stuck
in PENDING past the timeout, is re-claimed with a compare-and-swap so only one
worker processes it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.billing_constants import WebhookEventStatus
from models.payments import WebhookEvent
from services.billing.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


def get_event(db: Session, provider_event_id: str) -> Optional[WebhookEvent]:
    stmt = select(WebhookEvent).where(WebhookEvent.provider_event_id == provider_event_id)
    return db.execute(stmt.execution_options(populate_existing=True)).scalars().first()


def claim_event(
    db: Session,
    provider_event_id: str,
    event_type: str,
    *,
    pending_timeout_seconds: int = 300,
    now: Optional[datetime] = None,
) -> ClaimResult:
    moment = now or utcnow()
    try:
        db.add(
            WebhookEvent(
                provider_event_id=provider_event_id,
                type=event_type,
                status=WebhookEventStatus.PENDING.value,
                attempts=1,
                created_at=moment,
                updated_at=moment,
            )
        )
        db.commit()
        return ClaimResult.CLAIMED
    except IntegrityError:
        db.rollback()

    existing = get_event(db, provider_event_id)
    if existing is None:  # pragma: no cover - row vanished between insert and read
        return ClaimResult.IN_PROGRESS
    if existing.status == WebhookEventStatus.PROCESSED.value:
        return ClaimResult.DUPLICATE
    touched = ensure_utc(existing.updated_at) or moment
    if existing.status == WebhookEventStatus.PENDING.value and touched + timedelta(seconds=pending_timeout_seconds) > moment:
        return ClaimResult.IN_PROGRESS

    result = db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == existing.id,
            WebhookEvent.status == existing.status,
            WebhookEvent.attempts == existing.attempts,
        )
        .values(
            status=WebhookEventStatus.PENDING.value,
            attempts=WebhookEvent.attempts + 1,
            error_message=None,
            updated_at=moment,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return ClaimResult.IN_PROGRESS
    logger.info(
        "Re-claimed webhook event %s (previous status %s, attempt %d).",
        provider_event_id,
        existing.status,
        (existing.attempts or 0) + 1,
        extra={"webhook": {"event_id": provider_event_id, "type": event_type}},
    )
    return ClaimResult.CLAIMED


def _finish(db: Session, provider_event_id: str, status: WebhookEventStatus, error: Optional[str], now: datetime) -> None:
    values = {"status": status.value, "error_message": error, "updated_at": now}
    if status is WebhookEventStatus.PROCESSED:
        values["processed_at"] = now
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.provider_event_id == provider_event_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_processed(db: Session, provider_event_id: str, *, now: Optional[datetime] = None) -> None:
    _finish(db, provider_event_id, WebhookEventStatus.PROCESSED, None, now or utcnow())


def mark_failed(db: Session, provider_event_id: str, error: str, *, now: Optional[datetime] = None) -> None:
    _finish(db, provider_event_id, WebhookEventStatus.FAILED, (error or "")[:_MAX_ERROR_LENGTH], now or utcnow())


__all__ = ["ClaimResult", "claim_event", "get_event", "mark_failed", "mark_processed"]
