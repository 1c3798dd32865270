"""Shared billing enums used across models, services and routers."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Sequence


class _StrEnum(str, Enum):
    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class PlanTier(_StrEnum):
    BASIC = "basic"
    PREMIUM = "premium"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


class PriceInterval(_StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class FeatureType(_StrEnum):
    BOOLEAN = "boolean"
    METERED = "metered"


class ResetPeriod(_StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NEVER = "never"


class SubscriptionStatus(_StrEnum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"


class CancellationReason(_StrEnum):
    USER_REQUESTED = "user_requested"
    TRIAL_CANCELED = "trial_canceled"
    DUPLICATE_CARD = "duplicate_card"
    AUTO_CANCEL_PAST_DUE = "auto_cancel_past_due"
    PROVIDER_DELETED = "provider_deleted"


class WebhookEventStatus(_StrEnum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


TIER_ORDER: Dict[PlanTier, int] = {
    PlanTier.BASIC: 1,
    PlanTier.PREMIUM: 2,
    PlanTier.PLATINUM: 3,
    PlanTier.DIAMOND: 4,
}

# Statuses whose subscriptions contribute features to an organization.
ENTITLING_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)

# Provider statuses outside the local vocabulary collapse onto it.
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIALING,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.INCOMPLETE,
}

# Most permissive first when two limits tie on amount.
RESET_PERIOD_PERMISSIVENESS: Dict[ResetPeriod, int] = {
    ResetPeriod.MONTHLY: 3,
    ResetPeriod.YEARLY: 2,
    ResetPeriod.NEVER: 1,
}

GRACE_PERIOD_CONFIG_KEY = "payment_grace_period_days"

SUPPORTED_PLAN_TIERS: Sequence[PlanTier] = tuple(PlanTier)

__all__ = [
    "CancellationReason",
    "ENTITLING_STATUSES",
    "FeatureType",
    "GRACE_PERIOD_CONFIG_KEY",
    "PROVIDER_STATUS_MAP",
    "PlanTier",
    "PriceInterval",
    "RESET_PERIOD_PERMISSIVENESS",
    "ResetPeriod",
    "SUPPORTED_PLAN_TIERS",
    "SubscriptionStatus",
    "TIER_ORDER",
    "WebhookEventStatus",
]
