"""Runtime settings for the billing engine.

Values come from the environment (see ``core.env``); the payment grace period
can additionally be tuned by operators through the ``system_configs`` table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from core.billing_constants import GRACE_PERIOD_CONFIG_KEY
from core.env import env_float, env_int, env_str
from models.system_config import SystemConfig

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 3


@dataclass(frozen=True)
class ProviderSettings:
    secret_key: Optional[str]
    webhook_secret: Optional[str]
    api_base_url: str
    webhook_tolerance_seconds: int
    max_attempts: int
    backoff_seconds: float
    backoff_max_seconds: float
    timeout_seconds: float


@dataclass(frozen=True)
class BillingSettings:
    frontend_url: str
    internal_api_key: Optional[str]
    webhook_pending_timeout_seconds: int
    redis_url: Optional[str]
    sweep_interval_seconds: int


def load_provider_settings() -> ProviderSettings:
    return ProviderSettings(
        secret_key=env_str("STRIPE_SECRET_KEY"),
        webhook_secret=env_str("STRIPE_WEBHOOK_SECRET"),
        api_base_url=(env_str("STRIPE_API_BASE_URL", "https://api.stripe.com") or "").rstrip("/"),
        webhook_tolerance_seconds=env_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300, minimum=0),
        max_attempts=env_int("BILLING_PROVIDER_MAX_ATTEMPTS", 3, minimum=1),
        backoff_seconds=env_float("BILLING_PROVIDER_BACKOFF_SECONDS", 0.5, minimum=0.0),
        backoff_max_seconds=env_float("BILLING_PROVIDER_BACKOFF_MAX_SECONDS", 8.0, minimum=0.0),
        timeout_seconds=env_float("BILLING_PROVIDER_TIMEOUT_SECONDS", 10.0, minimum=0.1),
    )


def load_billing_settings() -> BillingSettings:
    return BillingSettings(
        frontend_url=(env_str("FRONTEND_URL", "http://localhost:3000") or "").rstrip("/"),
        internal_api_key=env_str("BILLING_INTERNAL_API_KEY"),
        webhook_pending_timeout_seconds=env_int("BILLING_WEBHOOK_PENDING_TIMEOUT_SECONDS", 300, minimum=1),
        redis_url=env_str("BILLING_REDIS_URL"),
        sweep_interval_seconds=env_int("BILLING_SWEEP_INTERVAL_SECONDS", 900, minimum=30),
    )


def grace_period_days(db: Session) -> int:
    """Past-due grace period; the ``system_configs`` row wins over the environment."""
    fallback = env_int("BILLING_GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS, minimum=0)
    row = db.get(SystemConfig, GRACE_PERIOD_CONFIG_KEY)
    if row is None or row.value is None:
        return fallback
    try:
        value = int(str(row.value).strip())
    except ValueError:
        logger.warning("Invalid %s config value '%s'; using %d.", GRACE_PERIOD_CONFIG_KEY, row.value, fallback)
        return fallback
    return max(value, 0)


__all__ = [
    "BillingSettings",
    "DEFAULT_GRACE_PERIOD_DAYS",
    "ProviderSettings",
    "grace_period_days",
    "load_billing_settings",
    "load_provider_settings",
]
