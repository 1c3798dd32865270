"""Periodic billing sweeps: scheduled downgrades and past-due auto-cancellation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import redis
from celery import shared_task
from sqlalchemy.orm import sessionmaker

import database
from services.billing.plan_change import apply_due_scheduled_changes
from services.billing.settings import load_billing_settings
from services.billing_service import cancel_overdue_subscriptions
from services.payments.stripe_client import StripeClient, build_stripe_client

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "billing:sweep:lock"


def _acquire_lock(redis_url: Optional[str], ttl_seconds: int) -> Optional[Callable[[], None]]:
    """Return a release callback, or ``None`` when another worker holds the lock.

    Without ``BILLING_REDIS_URL`` the sweep runs unlocked; every step is safe to
    repeat, the lock only avoids duplicate provider calls.
    """
    if not redis_url:
        return lambda: None
    client = redis.Redis.from_url(redis_url, decode_responses=True)
    token = uuid.uuid4().hex
    if not client.set(SWEEP_LOCK_KEY, token, nx=True, ex=ttl_seconds):
        return None

    def _release() -> None:
        if client.get(SWEEP_LOCK_KEY) == token:
            client.delete(SWEEP_LOCK_KEY)

    return _release


def run_billing_sweep(
    *,
    session_factory: Optional[sessionmaker] = None,
    provider: Optional[StripeClient] = None,
    now: Optional[datetime] = None,
    scheduled_changes: bool = True,
    overdue: bool = True,
) -> Dict[str, Any]:
    """One sweep tick. Each step commits per subscription, so partial runs are safe."""
    factory = session_factory or database.SessionLocal
    summary: Dict[str, Any] = {}
    with factory() as db:
        if scheduled_changes:
            sweep = apply_due_scheduled_changes(db, now=now)
            summary["scheduledChanges"] = {
                "examined": sweep.examined,
                "committed": sweep.committed,
                "conflicts": sweep.conflicts,
            }
        if overdue:
            client = provider
            if client is None:
                try:
                    client = build_stripe_client()
                except RuntimeError as exc:
                    logger.warning("Skipping overdue sweep: %s", exc)
                    summary["overdue"] = {"skipped": str(exc)}
                    return summary
            result = asyncio.run(cancel_overdue_subscriptions(db, client, now=now))
            summary["overdue"] = {
                "examined": result.examined,
                "canceled": result.canceled,
                "failed": result.failed,
            }
    return summary


@shared_task(name="billing.sweep")
def billing_sweep_task() -> Dict[str, Any]:
    settings = load_billing_settings()
    release = _acquire_lock(settings.redis_url, ttl_seconds=max(settings.sweep_interval_seconds - 5, 30))
    if release is None:
        logger.info("Billing sweep already running elsewhere; skipping this tick.")
        return {"skipped": "locked"}
    try:
        summary = run_billing_sweep()
    except Exception:
        logger.exception("Billing sweep failed.")
        raise
    finally:
        release()
    logger.info("billing.sweep.completed", extra={"sweep": summary})
    return summary


__all__ = ["SWEEP_LOCK_KEY", "billing_sweep_task", "run_billing_sweep"]
