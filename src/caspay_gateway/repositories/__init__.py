"""Repository package exports."""

from caspay_gateway.repositories.api_keys import ApiKeyRepository, MerchantRepository
from caspay_gateway.repositories.payments import PaymentRepository
from caspay_gateway.repositories.subscriptions import (
    SubscriptionPlanRepository,
    SubscriptionRepository,
)
from caspay_gateway.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
)

__all__ = [
    "ApiKeyRepository",
    "MerchantRepository",
    "PaymentRepository",
    "SubscriptionPlanRepository",
    "SubscriptionRepository",
    "WebhookEndpointRepository",
    "WebhookDeliveryRepository",
]
