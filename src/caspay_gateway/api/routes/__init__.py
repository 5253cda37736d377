"""Route modules."""

from . import api_keys, payments, reconciliation, subscriptions, validate_key, webhooks

__all__ = [
    "api_keys",
    "payments",
    "reconciliation",
    "subscriptions",
    "validate_key",
    "webhooks",
]
