"""Prometheus collectors for the billing engine."""

from __future__ import annotations

from typing import Optional, Sequence

from prometheus_client import REGISTRY, Counter

from core.logging import get_logger

logger = get_logger(__name__)


def _build_counter(name: str, documentation: str, labelnames: Sequence[str]) -> Optional[Counter]:
    """Create a Counter, reusing the registered one when a module is reloaded."""
    try:
        return Counter(name, documentation, tuple(labelnames))
    except ValueError:
        existing = getattr(REGISTRY, "_names_to_collectors", {}).get(name)
        if existing is None:
            logger.debug("Counter %s already registered but not found in registry.", name)
        return existing


_WEBHOOK_EVENTS = _build_counter(
    "billing_webhook_events_total",
    "Provider webhook deliveries by event type and outcome.",
    ("event_type", "result"),
)
_USAGE_DECISIONS = _build_counter(
    "billing_usage_decisions_total",
    "Entitlement checks and usage recordings by operation and result.",
    ("operation", "result"),
)
_TRANSITION_CONFLICTS = _build_counter(
    "billing_transition_conflicts_total",
    "Optimistic-concurrency losses on subscription rows.",
    ("outcome",),
)
_PROVIDER_REQUESTS = _build_counter(
    "billing_provider_requests_total",
    "Payment provider HTTP calls by operation and result.",
    ("operation", "result"),
)
_SWEEP_ACTIONS = _build_counter(
    "billing_sweep_actions_total",
    "Subscriptions touched by periodic sweeps.",
    ("sweep", "result"),
)


def record_webhook_event(event_type: str, result: str) -> None:
    if _WEBHOOK_EVENTS is not None:
        _WEBHOOK_EVENTS.labels(event_type=event_type or "unknown", result=result).inc()


def record_usage_decision(operation: str, allowed: bool) -> None:
    if _USAGE_DECISIONS is not None:
        _USAGE_DECISIONS.labels(operation=operation, result="allowed" if allowed else "blocked").inc()


def record_transition_conflict(outcome: str) -> None:
    """``outcome`` is ``retried`` or ``surfaced``."""
    if _TRANSITION_CONFLICTS is not None:
        _TRANSITION_CONFLICTS.labels(outcome=outcome).inc()


def record_provider_request(operation: str, result: str) -> None:
    if _PROVIDER_REQUESTS is not None:
        _PROVIDER_REQUESTS.labels(operation=operation, result=result).inc()


def record_sweep_action(sweep: str, result: str, count: int = 1) -> None:
    if _SWEEP_ACTIONS is not None and count > 0:
        _SWEEP_ACTIONS.labels(sweep=sweep, result=result).inc(count)


__all__ = [
    "record_provider_request",
    "record_sweep_action",
    "record_transition_conflict",
    "record_usage_decision",
    "record_webhook_event",
]
