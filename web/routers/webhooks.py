"""Payment-provider webhook receiver."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from schemas.api.billing import WebhookAckResponse
from services.billing.settings import BillingSettings
from services.billing_webhooks import WebhookStatus, process_webhook
from services.payments import verify_stripe_signature
from services.payments.stripe_client import StripeClient
from web.deps import get_billing_provider, get_billing_settings, get_db

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

logger = logging.getLogger(__name__)


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    summary="Receive Stripe webhook events",
)
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider: StripeClient = Depends(get_billing_provider),
    settings: BillingSettings = Depends(get_billing_settings),
) -> WebhookAckResponse:
    raw_body = await request.body()
    signature_header = request.headers.get("stripe-signature")
    if not signature_header:
        logger.warning("Stripe webhook missing signature header.")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "webhook.signature_missing", "message": "Stripe-Signature header is missing."},
        )

    try:
        is_valid = verify_stripe_signature(payload=raw_body, signature_header=signature_header)
    except RuntimeError as exc:
        logger.error("Stripe webhook verification unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "webhook.config_missing", "message": str(exc)},
        ) from exc
    if not is_valid:
        logger.warning("Stripe webhook signature mismatch.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "webhook.signature_invalid", "message": "Webhook signature verification failed."},
        )

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Stripe webhook payload is not valid JSON: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "webhook.invalid_payload", "message": "Webhook payload must be JSON."},
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "webhook.invalid_payload", "message": "Webhook payload must be a JSON object."},
        )

    try:
        result = await process_webhook(
            db,
            provider,
            payload,
            pending_timeout_seconds=settings.webhook_pending_timeout_seconds,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "webhook.invalid_payload", "message": str(exc)},
        ) from exc

    if result.status is WebhookStatus.IN_PROGRESS:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "webhook.in_progress", "message": "Event is already being processed."},
        )
    if result.status is WebhookStatus.FAILED:
        detail = {"code": "webhook.processing_failed", "message": "Webhook event could not be applied."}
        if result.error is not None:
            detail["error"] = result.error.to_detail()
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
    return WebhookAckResponse(received=True, status=result.status.value)


__all__ = ["router"]
