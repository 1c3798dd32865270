"""Stripe webhook signature verification (``Stripe-Signature: t=...,v1=...``)."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple

from services.billing.settings import load_provider_settings

logger = logging.getLogger(__name__)


def get_webhook_secret() -> str:
    secret = load_provider_settings().webhook_secret
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured.")
    return secret


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    *,
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """True when one ``v1`` signature matches and the timestamp is within tolerance."""
    if not payload or not signature_header:
        return False
    timestamp, signatures = parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        logger.debug("Malformed Stripe-Signature header.")
        return False

    tolerance = load_provider_settings().webhook_tolerance_seconds if tolerance_seconds is None else tolerance_seconds
    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        logger.warning("Stripe webhook timestamp outside tolerance (%ss).", tolerance)
        return False

    expected = compute_signature(payload, timestamp, secret or get_webhook_secret())
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


__all__ = ["compute_signature", "get_webhook_secret", "parse_signature_header", "verify_stripe_signature"]
