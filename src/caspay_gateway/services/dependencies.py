"""Shared dependency providers for aiohttp handlers and background tasks."""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from aiohttp import web

from caspay_gateway.db.pool import get_pool
from caspay_gateway.repositories import (
    ApiKeyRepository,
    MerchantRepository,
    PaymentRepository,
    SubscriptionPlanRepository,
    SubscriptionRepository,
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
)
from caspay_gateway.services.api_keys import ApiKeyService, ApiKeyValidator
from caspay_gateway.services.casper_rpc import client_for
from caspay_gateway.services.rate_limit import RateLimiter
from caspay_gateway.services.reconciliation import PaymentReconciler
from caspay_gateway.services.subscriptions import SubscriptionService
from caspay_gateway.services.transactions import TransactionVerifier
from caspay_gateway.services.webhooks import WebhookDispatcher, WebhookService
from caspay_gateway.settings import settings
from caspay_gateway.webhooks_dispatcher import get_http_session

TService = TypeVar("TService")

RATE_LIMITER_KEY = "rate_limiter"

_VALIDATOR_KEY = "api_key_validator"
_API_KEY_SERVICE_KEY = "api_key_service"
_WEBHOOK_SERVICE_KEY = "webhook_service"
_RECONCILER_KEY = "payment_reconciler"
_SUBSCRIPTION_SERVICE_KEY = "subscription_service"


async def build_webhook_dispatcher() -> WebhookDispatcher:
    pool = await get_pool()
    session = await get_http_session()
    return WebhookDispatcher(
        WebhookEndpointRepository(pool),
        WebhookDeliveryRepository(pool),
        session,
    )


async def build_subscription_service() -> SubscriptionService:
    pool = await get_pool()
    return SubscriptionService(SubscriptionPlanRepository(pool), SubscriptionRepository(pool))


async def build_reconciler() -> PaymentReconciler:
    pool = await get_pool()
    session = await get_http_session()
    payments = PaymentRepository(pool)
    verifier = TransactionVerifier(
        payments,
        lambda network: client_for(network, session),
        mock_mode=settings.transaction_mock_mode,
    )
    return PaymentReconciler(
        payments,
        MerchantRepository(pool),
        verifier,
        await build_webhook_dispatcher(),
        subscriptions=await build_subscription_service(),
    )


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


def get_rate_limiter(request: web.Request) -> RateLimiter:
    return request.app[RATE_LIMITER_KEY]


async def get_api_key_validator(request: web.Request) -> ApiKeyValidator:
    async def builder(_: web.Request) -> ApiKeyValidator:
        pool = await get_pool()
        return ApiKeyValidator(ApiKeyRepository(pool), MerchantRepository(pool))

    return await _get_or_create_service(request, _VALIDATOR_KEY, builder)


async def get_api_key_service(request: web.Request) -> ApiKeyService:
    async def builder(_: web.Request) -> ApiKeyService:
        pool = await get_pool()
        return ApiKeyService(ApiKeyRepository(pool))

    return await _get_or_create_service(request, _API_KEY_SERVICE_KEY, builder)


async def get_webhook_service(request: web.Request) -> WebhookService:
    async def builder(_: web.Request) -> WebhookService:
        pool = await get_pool()
        return WebhookService(
            WebhookEndpointRepository(pool),
            WebhookDeliveryRepository(pool),
            await build_webhook_dispatcher(),
        )

    return await _get_or_create_service(request, _WEBHOOK_SERVICE_KEY, builder)


async def get_reconciler(request: web.Request) -> PaymentReconciler:
    async def builder(_: web.Request) -> PaymentReconciler:
        return await build_reconciler()

    return await _get_or_create_service(request, _RECONCILER_KEY, builder)


async def get_subscription_service(request: web.Request) -> SubscriptionService:
    async def builder(_: web.Request) -> SubscriptionService:
        return await build_subscription_service()

    return await _get_or_create_service(request, _SUBSCRIPTION_SERVICE_KEY, builder)
