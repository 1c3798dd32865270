"""Typed snapshot of a provider subscription object."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from services.billing.clock import from_timestamp


def _first_item(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    items = payload.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _as_id(value: Any) -> Optional[str]:
    """Provider references arrive either as ids or expanded objects."""
    if isinstance(value, Mapping):
        value = value.get("id")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _truthy_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class RemoteSubscription:
    """Provider-owned subscription state.

    ``observed_at`` is the provider's event creation time and orders pushed
    snapshots for the same subscription. Objects fetched by a pull carry no
    event time (``None``): they are the provider's current state and only move
    the ordering watermark up to :attr:`ordering_floor`.
    """

    provider_subscription_id: str
    status: str
    observed_at: Optional[datetime]
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    default_payment_method: Optional[str] = None
    schedule_id: Optional[str] = None
    card_fingerprint: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def organization_id(self) -> Optional[str]:
        return self.metadata.get("organization_id") or self.metadata.get("organizationId")

    @property
    def auto_cancel_trial(self) -> bool:
        return _truthy_flag(self.metadata.get("auto_cancel_trial", ""))

    @property
    def ordering_floor(self) -> Optional[datetime]:
        """Latest provider-clock timestamp inside the object; never later than the fetch."""
        stamps = [
            stamp
            for stamp in (self.current_period_start, self.trial_start, self.canceled_at)
            if stamp is not None
        ]
        return max(stamps) if stamps else None

    @classmethod
    def from_provider(cls, payload: Mapping[str, Any], *, observed_at: Optional[datetime] = None) -> "RemoteSubscription":
        item = _first_item(payload)
        price = item.get("price") or {}
        # Newer API versions moved the billing period onto the subscription item.
        period_start = payload.get("current_period_start", item.get("current_period_start"))
        period_end = payload.get("current_period_end", item.get("current_period_end"))
        metadata = payload.get("metadata") or {}
        return cls(
            provider_subscription_id=str(payload.get("id") or ""),
            status=str(payload.get("status") or ""),
            observed_at=observed_at,
            customer_id=_as_id(payload.get("customer")),
            price_id=_as_id(price) if price else None,
            current_period_start=from_timestamp(period_start),
            current_period_end=from_timestamp(period_end),
            trial_start=from_timestamp(payload.get("trial_start")),
            trial_end=from_timestamp(payload.get("trial_end")),
            cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
            canceled_at=from_timestamp(payload.get("canceled_at")),
            default_payment_method=_as_id(payload.get("default_payment_method")),
            schedule_id=_as_id(payload.get("schedule")),
            metadata={str(key): str(value) for key, value in metadata.items()},
        )

    def with_fingerprint(self, fingerprint: Optional[str]) -> "RemoteSubscription":
        return replace(self, card_fingerprint=fingerprint)


__all__ = ["RemoteSubscription"]
