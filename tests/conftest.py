from __future__ import annotations

import pytest

from caspay_gateway.domain.enums import Network
from caspay_gateway.services.api_keys import ApiKeyValidator
from caspay_gateway.services.subscriptions import SubscriptionService
from tests.fakes import (
    FakeApiKeyRepository,
    FakeMerchantRepository,
    FakePaymentRepository,
    FakeSubscriptionPlanRepository,
    FakeSubscriptionRepository,
    FakeWebhookDeliveryRepository,
    FakeWebhookEndpointRepository,
    make_merchant,
)


@pytest.fixture
def testnet_merchant():
    return make_merchant(network=Network.TESTNET)


@pytest.fixture
def mainnet_merchant():
    return make_merchant(network=Network.MAINNET, merchant_id="MERCH_LIVE01")


@pytest.fixture
def merchant_repo(testnet_merchant, mainnet_merchant):
    return FakeMerchantRepository(testnet_merchant, mainnet_merchant)


@pytest.fixture
def key_repo():
    return FakeApiKeyRepository()


@pytest.fixture
def validator(key_repo, merchant_repo):
    return ApiKeyValidator(key_repo, merchant_repo)


@pytest.fixture
def endpoint_repo():
    return FakeWebhookEndpointRepository()


@pytest.fixture
def delivery_repo(endpoint_repo):
    return FakeWebhookDeliveryRepository(endpoint_repo)


@pytest.fixture
def payment_repo():
    return FakePaymentRepository()


@pytest.fixture
def plan_repo():
    return FakeSubscriptionPlanRepository()


@pytest.fixture
def subscription_repo():
    return FakeSubscriptionRepository()


@pytest.fixture
def subscription_service(plan_repo, subscription_repo):
    return SubscriptionService(plan_repo, subscription_repo)
