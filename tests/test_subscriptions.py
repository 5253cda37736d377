from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from caspay_gateway.domain.enums import SubscriptionInterval, SubscriptionStatus
from caspay_gateway.services.subscriptions import SubscriptionService, add_interval

SUBSCRIBER = "01" + "ab" * 32
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(plan_repo, subscription_repo):
    return SubscriptionService(plan_repo, subscription_repo, clock=lambda: NOW)


@pytest.mark.parametrize(
    "start,interval,expected",
    [
        (datetime(2024, 1, 31), SubscriptionInterval.MONTHLY, datetime(2024, 2, 29)),
        (datetime(2023, 12, 15), SubscriptionInterval.MONTHLY, datetime(2024, 1, 15)),
        (datetime(2024, 2, 29), SubscriptionInterval.YEARLY, datetime(2025, 2, 28)),
        (datetime(2024, 5, 1), SubscriptionInterval.WEEKLY, datetime(2024, 5, 8)),
    ],
)
def test_add_interval(start, interval, expected):
    assert add_interval(start, interval) == expected


def test_add_interval_count():
    assert add_interval(datetime(2024, 11, 30), SubscriptionInterval.MONTHLY, 3) == datetime(
        2025, 2, 28
    )


@pytest.mark.asyncio
async def test_renew_creates_subscription(service, plan_repo, testnet_merchant):
    plan = plan_repo.add(testnet_merchant)

    subscription, renewed = await service.renew(testnet_merchant.id, plan, SUBSCRIBER.upper())

    assert renewed is False
    assert subscription.subscriber_address == SUBSCRIBER
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_renew_extends_live_subscription_from_its_end(
    service, plan_repo, subscription_repo, testnet_merchant
):
    plan = plan_repo.add(testnet_merchant)
    end = NOW + timedelta(days=10)
    existing = subscription_repo.add(
        plan, SUBSCRIBER, period_start=NOW - timedelta(days=20), period_end=end
    )

    subscription, renewed = await service.renew(testnet_merchant.id, plan, SUBSCRIBER)

    assert renewed is True
    assert subscription.id == existing.id
    assert subscription.current_period_start == existing.current_period_start
    assert subscription.current_period_end == datetime(2024, 6, 11, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,end_offset",
    [
        (SubscriptionStatus.ACTIVE, timedelta(days=-1)),
        (SubscriptionStatus.CANCELLED, timedelta(days=5)),
    ],
)
async def test_renew_restarts_ended_subscription(
    service, plan_repo, subscription_repo, testnet_merchant, status, end_offset
):
    plan = plan_repo.add(testnet_merchant, interval=SubscriptionInterval.YEARLY)
    existing = subscription_repo.add(
        plan,
        SUBSCRIBER,
        period_start=NOW - timedelta(days=400),
        period_end=NOW + end_offset,
        status=status,
    )

    subscription, renewed = await service.renew(testnet_merchant.id, plan, SUBSCRIBER)

    assert renewed is True
    assert subscription.id == existing.id
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_check_reports_live_subscription(
    service, plan_repo, subscription_repo, testnet_merchant
):
    plan = plan_repo.add(testnet_merchant, "plan_pro")
    subscription_repo.add(
        plan, SUBSCRIBER, period_start=NOW, period_end=NOW + timedelta(days=30)
    )

    result = await service.check(testnet_merchant.id, SUBSCRIBER.upper())

    assert result.is_active
    assert result.count == 1
    assert result.plan.plan_id == "plan_pro"


@pytest.mark.asyncio
async def test_check_ignores_ended_and_paused(
    service, plan_repo, subscription_repo, testnet_merchant
):
    plan = plan_repo.add(testnet_merchant)
    subscription_repo.add(
        plan, SUBSCRIBER, period_start=NOW - timedelta(days=60), period_end=NOW - timedelta(days=1)
    )
    subscription_repo.add(
        plan,
        SUBSCRIBER,
        period_start=NOW,
        period_end=NOW + timedelta(days=30),
        status=SubscriptionStatus.PAUSED,
    )

    result = await service.check(testnet_merchant.id, SUBSCRIBER)

    assert not result.is_active
    assert result.message == "No active subscriptions found"


@pytest.mark.asyncio
async def test_check_filters_by_plan(service, plan_repo, subscription_repo, testnet_merchant):
    basic = plan_repo.add(testnet_merchant, "plan_basic")
    plan_repo.add(testnet_merchant, "plan_pro")
    subscription_repo.add(
        basic, SUBSCRIBER, period_start=NOW, period_end=NOW + timedelta(days=30)
    )

    assert (await service.check(testnet_merchant.id, SUBSCRIBER, "plan_basic")).is_active
    assert not (await service.check(testnet_merchant.id, SUBSCRIBER, "plan_pro")).is_active

    missing = await service.check(testnet_merchant.id, SUBSCRIBER, "plan_gone")
    assert not missing.is_active
    assert missing.message == "Plan not found"


@pytest.mark.asyncio
async def test_check_is_scoped_to_merchant(
    service, plan_repo, subscription_repo, testnet_merchant, mainnet_merchant
):
    plan = plan_repo.add(testnet_merchant)
    subscription_repo.add(
        plan, SUBSCRIBER, period_start=NOW, period_end=NOW + timedelta(days=30)
    )
    assert not (await service.check(mainnet_merchant.id, SUBSCRIBER)).is_active
