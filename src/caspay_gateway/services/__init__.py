"""Domain services exports."""

from caspay_gateway.services.api_keys import ApiKeyService, ApiKeyValidator
from caspay_gateway.services.rate_limit import InMemoryRateLimitStore, RateLimiter
from caspay_gateway.services.reconciliation import PaymentReconciler
from caspay_gateway.services.transactions import TransactionVerifier
from caspay_gateway.services.webhooks import WebhookDispatcher, WebhookService

__all__ = [
    "ApiKeyService",
    "ApiKeyValidator",
    "InMemoryRateLimitStore",
    "RateLimiter",
    "PaymentReconciler",
    "TransactionVerifier",
    "WebhookDispatcher",
    "WebhookService",
]
