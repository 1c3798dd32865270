"""Stripe REST client used by the billing engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from services.billing.errors import ProviderError
from services.billing.settings import ProviderSettings, load_provider_settings
from services.billing_metrics import record_provider_request

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_API_BASE_URL = "https://api.stripe.com"
_RETRYABLE_STATUS = {409, 429}


def flatten_params(params: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Encode nested params the way the Stripe form API expects (``a[b][0]=c``)."""
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, Mapping):
                    pairs.extend(flatten_params(item, item_name))
                else:
                    pairs.append((item_name, _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _error_message(payload: Mapping[str, Any]) -> str:
    error = payload.get("error") if isinstance(payload, Mapping) else None
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    return "Payment provider request failed."


@dataclass
class StripeClient:
    """Async wrapper over the Stripe HTTP API.

    Every mutating call takes an idempotency key which is sent unchanged on each
    retry, so a timeout followed by a retry can never apply the change twice.
    Timeouts, transport errors, 409/429 and 5xx responses are retried with
    capped exponential backoff; other 4xx responses fail immediately.
    """

    secret_key: str
    base_url: str = DEFAULT_STRIPE_API_BASE_URL
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    timeout: float = 10.0
    transport: Optional[httpx.AsyncBaseTransport] = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        encoded = flatten_params(params or {})
        query = encoded if method == "GET" else None
        form = dict(encoded) if method != "GET" and encoded else None

        last_status: Optional[int] = None
        last_payload: Dict[str, Any] = {}
        last_message = "Payment provider request failed."
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.request(method, url, headers=headers, params=query, data=form)
            except httpx.TransportError as exc:
                last_status = None
                last_message = f"Payment provider unreachable: {exc.__class__.__name__}"
                logger.warning("Stripe %s attempt %d/%d failed: %s", operation, attempt, self.max_attempts, exc)
            else:
                if response.status_code < 400:
                    record_provider_request(operation, "ok")
                    return response.json()
                try:
                    last_payload = response.json()
                except ValueError:
                    last_payload = {"body": response.text}
                last_status = response.status_code
                last_message = _error_message(last_payload)
                retryable = response.status_code in _RETRYABLE_STATUS or response.status_code >= 500
                logger.warning(
                    "Stripe %s attempt %d/%d returned %s: %s",
                    operation,
                    attempt,
                    self.max_attempts,
                    response.status_code,
                    last_message,
                )
                if not retryable:
                    record_provider_request(operation, "rejected")
                    raise ProviderError(
                        "provider.request_rejected",
                        last_message,
                        status_code=response.status_code,
                        payload=last_payload,
                    )
            if attempt < self.max_attempts:
                await self.sleep(self._backoff(attempt))

        record_provider_request(operation, "exhausted")
        raise ProviderError(
            "provider.unavailable",
            last_message,
            detail={"operation": operation, "attempts": self.max_attempts},
            status_code=last_status,
            payload=last_payload,
        )

    # Customers and sessions

    async def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        params = {"email": email, "name": name, "metadata": dict(metadata)}
        return await self._request("POST", "/v1/customers", operation="create_customer", params=params, idempotency_key=idempotency_key)

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
        trial_period_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
        }
        if mode == "subscription":
            subscription_data: Dict[str, Any] = {"metadata": dict(metadata)}
            if trial_period_days:
                subscription_data["trial_period_days"] = trial_period_days
            params["subscription_data"] = subscription_data
        return await self._request(
            "POST", "/v1/checkout/sessions", operation="create_checkout_session", params=params, idempotency_key=idempotency_key
        )

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        params = {"customer": customer_id, "return_url": return_url}
        return await self._request("POST", "/v1/billing_portal/sessions", operation="create_portal_session", params=params)

    # Subscriptions

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/subscriptions/{subscription_id}", operation="retrieve_subscription")

    async def list_customer_subscriptions(self, customer_id: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET",
            "/v1/subscriptions",
            operation="list_subscriptions",
            params={"customer": customer_id, "status": "all", "limit": limit},
        )
        return list(payload.get("data") or [])

    async def cancel_at_period_end(self, subscription_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            operation="cancel_at_period_end",
            params={"cancel_at_period_end": True},
            idempotency_key=idempotency_key,
        )

    async def resume_subscription(self, subscription_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            operation="resume_subscription",
            params={"cancel_at_period_end": False},
            idempotency_key=idempotency_key,
        )

    async def cancel_immediately(self, subscription_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        return await self._request(
            "DELETE",
            f"/v1/subscriptions/{subscription_id}",
            operation="cancel_immediately",
            idempotency_key=idempotency_key,
        )

    async def update_subscription_price(
        self,
        subscription_id: str,
        *,
        item_id: str,
        price_id: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        params = {
            "items": [{"id": item_id, "price": price_id}],
            "proration_behavior": "always_invoice",
            "cancel_at_period_end": False,
        }
        return await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            operation="update_subscription_price",
            params=params,
            idempotency_key=idempotency_key,
        )

    async def create_trial_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        trial_period_days: int,
        metadata: Mapping[str, str],
        idempotency_key: str,
        default_payment_method: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "trial_period_days": trial_period_days,
            "payment_behavior": "default_incomplete",
            "trial_settings": {"end_behavior": {"missing_payment_method": "cancel"}},
            "metadata": dict(metadata),
            "default_payment_method": default_payment_method,
        }
        return await self._request(
            "POST", "/v1/subscriptions", operation="create_trial_subscription", params=params, idempotency_key=idempotency_key
        )

    # Schedules (deferred downgrades)

    async def schedule_price_change(
        self,
        subscription_id: str,
        *,
        current_price_id: str,
        new_price_id: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """Keep the current price until period end, then switch to ``new_price_id``."""
        schedule = await self._request(
            "POST",
            "/v1/subscription_schedules",
            operation="create_schedule",
            params={"from_subscription": subscription_id},
            idempotency_key=f"{idempotency_key}:create",
        )
        phases = schedule.get("phases") or [{}]
        current_phase = phases[0]
        params = {
            "end_behavior": "release",
            "phases": [
                {
                    "items": [{"price": current_price_id, "quantity": 1}],
                    "start_date": current_phase.get("start_date"),
                    "end_date": current_phase.get("end_date"),
                },
                {"items": [{"price": new_price_id, "quantity": 1}], "iterations": 1},
            ],
        }
        return await self._request(
            "POST",
            f"/v1/subscription_schedules/{schedule['id']}",
            operation="update_schedule",
            params=params,
            idempotency_key=f"{idempotency_key}:phases",
        )

    async def release_schedule(self, schedule_id: str, *, idempotency_key: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/subscription_schedules/{schedule_id}/release",
            operation="release_schedule",
            idempotency_key=idempotency_key,
        )

    # Read-only listings

    async def list_invoices(self, customer_id: str, *, limit: int = 24) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET", "/v1/invoices", operation="list_invoices", params={"customer": customer_id, "limit": limit}
        )
        return list(payload.get("data") or [])

    async def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        payload = await self._request(
            "GET",
            f"/v1/customers/{customer_id}/payment_methods",
            operation="list_payment_methods",
            params={"type": "card"},
        )
        return list(payload.get("data") or [])

    async def retrieve_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/payment_methods/{payment_method_id}", operation="retrieve_payment_method")

    async def card_fingerprint(self, payment_method_id: Optional[str]) -> Optional[str]:
        if not payment_method_id:
            return None
        payment_method = await self.retrieve_payment_method(payment_method_id)
        card = payment_method.get("card") or {}
        return card.get("fingerprint")


def build_stripe_client(settings: Optional[ProviderSettings] = None) -> StripeClient:
    config = settings or load_provider_settings()
    if not config.secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured.")
    return StripeClient(
        secret_key=config.secret_key,
        base_url=config.api_base_url or DEFAULT_STRIPE_API_BASE_URL,
        max_attempts=config.max_attempts,
        backoff_seconds=config.backoff_seconds,
        backoff_max_seconds=config.backoff_max_seconds,
        timeout=config.timeout_seconds,
    )


__all__ = ["DEFAULT_STRIPE_API_BASE_URL", "StripeClient", "build_stripe_client", "flatten_params"]
