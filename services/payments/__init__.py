"""Payment provider helpers."""

from .stripe_client import StripeClient, build_stripe_client, flatten_params
from .stripe_webhook import compute_signature, get_webhook_secret, verify_stripe_signature

__all__ = [
    "StripeClient",
    "build_stripe_client",
    "compute_signature",
    "flatten_params",
    "get_webhook_secret",
    "verify_stripe_signature",
]
