"""Subscription periods: renewal on payment and access checks."""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

import structlog

from caspay_gateway.domain.enums import SubscriptionInterval, SubscriptionStatus
from caspay_gateway.domain.models import Subscription, SubscriptionCheck, SubscriptionPlan
from caspay_gateway.repositories.subscriptions import (
    SubscriptionPlanRepository,
    SubscriptionRepository,
)

logger = structlog.get_logger(__name__)


def add_interval(start: datetime, interval: SubscriptionInterval, count: int = 1) -> datetime:
    """Advance ``start`` by ``count`` billing intervals.

    Month arithmetic clamps to the last day of the target month, so
    Jan 31 + 1 month is Feb 28 (or 29).
    """
    count = max(count, 1)
    if interval is SubscriptionInterval.WEEKLY:
        return start + timedelta(weeks=count)
    months = count * (12 if interval is SubscriptionInterval.YEARLY else 1)
    index = start.month - 1 + months
    year, month = start.year + index // 12, index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class SubscriptionService:
    def __init__(
        self,
        plan_repository: SubscriptionPlanRepository,
        subscription_repository: SubscriptionRepository,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._plans = plan_repository
        self._subscriptions = subscription_repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_plan(self, merchant_id: UUID, plan_code: str) -> SubscriptionPlan | None:
        return await self._plans.get_by_code(merchant_id, plan_code)

    async def renew(
        self, merchant_id: UUID, plan: SubscriptionPlan, subscriber_address: str
    ) -> tuple[Subscription, bool]:
        """Apply one paid period for ``subscriber_address``.

        A live subscription is extended from its current end; an ended one is
        restarted from now; otherwise a new one is created. The flag is True
        when an existing subscription was reused.
        """
        subscriber = subscriber_address.lower()
        now = self._clock()
        existing = await self._subscriptions.latest_for_subscriber(
            merchant_id, plan.id, subscriber
        )
        if existing is None:
            created = await self._subscriptions.create(
                merchant_id=merchant_id,
                plan_id=plan.id,
                subscriber_address=subscriber,
                period_start=now,
                period_end=add_interval(now, plan.interval, plan.interval_count),
            )
            logger.info("subscription created", subscription_id=str(created.id))
            return created, False

        if existing.status is SubscriptionStatus.ACTIVE and existing.current_period_end > now:
            renewed = await self._subscriptions.extend(
                existing.id,
                add_interval(existing.current_period_end, plan.interval, plan.interval_count),
            )
            logger.info("subscription extended", subscription_id=str(existing.id))
        else:
            renewed = await self._subscriptions.reactivate(
                existing.id,
                now,
                add_interval(now, plan.interval, plan.interval_count),
            )
            logger.info(
                "subscription reactivated",
                subscription_id=str(existing.id),
                previous_status=existing.status.value,
            )
        return renewed, True

    async def check(
        self, merchant_id: UUID, subscriber_address: str, plan_code: str | None = None
    ) -> SubscriptionCheck:
        plan_id: UUID | None = None
        if plan_code is not None:
            plan = await self._plans.get_by_code(merchant_id, plan_code)
            if plan is None:
                return SubscriptionCheck(is_active=False, message="Plan not found")
            plan_id = plan.id

        live = await self._subscriptions.list_live(
            merchant_id, subscriber_address.lower(), self._clock(), plan_id=plan_id
        )
        if not live:
            return SubscriptionCheck(is_active=False, message="No active subscriptions found")
        latest = live[0]
        return SubscriptionCheck(
            is_active=True,
            subscription=latest,
            plan=await self._plans.get_by_id(latest.plan_id),
            count=len(live),
        )
