"""Shared FastAPI dependencies."""

from __future__ import annotations

import hmac
import uuid
from typing import NoReturn, Optional

from fastapi import Depends, Header, HTTPException, status

from database import get_db
from services.billing.errors import BillingError, BillingErrorKind
from services.billing.settings import BillingSettings, load_billing_settings
from services.payments.stripe_client import StripeClient, build_stripe_client

_KIND_STATUS = {
    BillingErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    BillingErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    BillingErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    BillingErrorKind.PROVIDER: status.HTTP_502_BAD_GATEWAY,
    BillingErrorKind.LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
}
_CODE_STATUS = {
    "usage.not_entitled": status.HTTP_403_FORBIDDEN,
}


def error_status(error: BillingError) -> int:
    return _CODE_STATUS.get(error.code, _KIND_STATUS.get(error.kind, status.HTTP_400_BAD_REQUEST))


def raise_billing_error(error: BillingError) -> NoReturn:
    raise HTTPException(status_code=error_status(error), detail=error.to_detail())


def get_billing_settings() -> BillingSettings:
    return load_billing_settings()


def get_billing_provider() -> StripeClient:
    """Provider client; 503 when the secret key is not configured."""
    try:
        return build_stripe_client()
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "billing.provider_unconfigured", "message": str(exc)},
        ) from exc


def get_organization_id(x_organization_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    """Organisation the request acts for, taken from ``X-Organization-Id``."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "organization.required", "message": "X-Organization-Id header is required."},
        )
    try:
        return uuid.UUID(x_organization_id.strip())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "organization.invalid", "message": "X-Organization-Id must be a UUID."},
        ) from exc


def require_internal_api_key(
    x_internal_api_key: Optional[str] = Header(default=None),
    settings: BillingSettings = Depends(get_billing_settings),
) -> None:
    if not settings.internal_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "internal.unconfigured", "message": "BILLING_INTERNAL_API_KEY is not configured."},
        )
    if not x_internal_api_key or not hmac.compare_digest(x_internal_api_key, settings.internal_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "internal.unauthorized", "message": "Invalid internal API key."},
        )


__all__ = [
    "error_status",
    "get_billing_provider",
    "get_billing_settings",
    "get_db",
    "get_organization_id",
    "raise_billing_error",
    "require_internal_api_key",
]
