"""Closed set of provider webhook events the engine understands.

Each supported event type parses into one frozen dataclass; the union
``ProviderEvent`` is the only thing handlers ever see, so a new variant without
a handler fails at import time (see ``services.billing_webhooks``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Union

from services.billing.clock import from_timestamp, utcnow
from services.billing.remote import RemoteSubscription


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    event_id: str
    created: datetime
    session_id: str
    mode: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_intent_id: Optional[str]
    amount_total: Optional[Decimal]
    currency: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def organization_id(self) -> Optional[str]:
        return self.metadata.get("organization_id") or self.metadata.get("organizationId")


@dataclass(frozen=True)
class SubscriptionChanged:
    """``customer.subscription.created`` and ``customer.subscription.updated``."""

    event_id: str
    created: datetime
    event_type: str
    subscription: RemoteSubscription


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    created: datetime
    subscription: RemoteSubscription


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    created: datetime
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    created: datetime
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]


ProviderEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
]


def _ref(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _invoice_subscription(invoice: Mapping[str, Any]) -> Optional[str]:
    direct = _ref(invoice.get("subscription"))
    if direct:
        return direct
    # Newer API versions nest it under parent.subscription_details.
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {} if isinstance(parent, Mapping) else {}
    return _ref(details.get("subscription")) if isinstance(details, Mapping) else None


def _checkout(event_id: str, created: datetime, obj: Mapping[str, Any], _type: str) -> CheckoutSessionCompleted:
    amount = obj.get("amount_total")
    return CheckoutSessionCompleted(
        event_id=event_id,
        created=created,
        session_id=str(obj.get("id") or ""),
        mode=str(obj.get("mode") or ""),
        customer_id=_ref(obj.get("customer")),
        subscription_id=_ref(obj.get("subscription")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        # Minor units (cents) on the wire.
        amount_total=(Decimal(amount) / Decimal(100)) if amount is not None else None,
        currency=(str(obj.get("currency")).upper() if obj.get("currency") else None),
        metadata={str(k): str(v) for k, v in (obj.get("metadata") or {}).items()},
    )


def _subscription_changed(event_id: str, created: datetime, obj: Mapping[str, Any], event_type: str) -> SubscriptionChanged:
    return SubscriptionChanged(
        event_id=event_id,
        created=created,
        event_type=event_type,
        subscription=RemoteSubscription.from_provider(obj, observed_at=created),
    )


def _subscription_deleted(event_id: str, created: datetime, obj: Mapping[str, Any], _type: str) -> SubscriptionDeleted:
    return SubscriptionDeleted(
        event_id=event_id,
        created=created,
        subscription=RemoteSubscription.from_provider(obj, observed_at=created),
    )


def _invoice_failed(event_id: str, created: datetime, obj: Mapping[str, Any], _type: str) -> InvoicePaymentFailed:
    return InvoicePaymentFailed(
        event_id=event_id,
        created=created,
        invoice_id=str(obj.get("id") or ""),
        subscription_id=_invoice_subscription(obj),
        customer_id=_ref(obj.get("customer")),
    )


def _invoice_succeeded(event_id: str, created: datetime, obj: Mapping[str, Any], _type: str) -> InvoicePaymentSucceeded:
    return InvoicePaymentSucceeded(
        event_id=event_id,
        created=created,
        invoice_id=str(obj.get("id") or ""),
        subscription_id=_invoice_subscription(obj),
        customer_id=_ref(obj.get("customer")),
    )


_PARSERS: Dict[str, Callable[[str, datetime, Mapping[str, Any], str], ProviderEvent]] = {
    "checkout.session.completed": _checkout,
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_failed": _invoice_failed,
    "invoice.payment_succeeded": _invoice_succeeded,
    "invoice.paid": _invoice_succeeded,
}

SUPPORTED_EVENT_TYPES = frozenset(_PARSERS)


def parse_provider_event(payload: Mapping[str, Any]) -> Optional[ProviderEvent]:
    """Return the typed event, or ``None`` for event types the engine ignores.

    Raises ``ValueError`` when a supported event is missing its id or object.
    """
    event_type = str(payload.get("type") or "")
    parser = _PARSERS.get(event_type)
    if parser is None:
        return None
    event_id = str(payload.get("id") or "").strip()
    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not event_id or not isinstance(obj, Mapping):
        raise ValueError(f"Malformed {event_type} event payload.")
    created = from_timestamp(payload.get("created")) or utcnow()
    return parser(event_id, created, obj, event_type)


__all__ = [
    "CheckoutSessionCompleted",
    "InvoicePaymentFailed",
    "InvoicePaymentSucceeded",
    "ProviderEvent",
    "SUPPORTED_EVENT_TYPES",
    "SubscriptionChanged",
    "SubscriptionDeleted",
    "parse_provider_event",
]
