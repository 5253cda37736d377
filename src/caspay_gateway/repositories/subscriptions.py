"""Subscription plan and subscriber repositories."""
from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from caspay_gateway.core.exceptions import NotFoundError
from caspay_gateway.domain.models import Subscription, SubscriptionPlan
from caspay_gateway.repositories.base import BaseRepository


class SubscriptionPlanRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> SubscriptionPlan:
        return SubscriptionPlan.model_validate(dict(record))

    async def get_by_code(self, merchant_id: UUID, plan_code: str) -> SubscriptionPlan | None:
        """Look a plan up by the merchant-facing ``plan_...`` id."""
        record = await self._fetchrow(
            "SELECT * FROM subscription_plans WHERE merchant_id = $1 AND plan_id = $2",
            merchant_id,
            plan_code,
        )
        return self._to_model(record) if record else None

    async def get_by_id(self, plan_id: UUID) -> SubscriptionPlan | None:
        record = await self._fetchrow(
            "SELECT * FROM subscription_plans WHERE id = $1",
            plan_id,
        )
        return self._to_model(record) if record else None


class SubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> Subscription:
        return Subscription.model_validate(dict(record))

    async def latest_for_subscriber(
        self, merchant_id: UUID, plan_id: UUID, subscriber_address: str
    ) -> Subscription | None:
        record = await self._fetchrow(
            """
            SELECT *
            FROM subscriptions
            WHERE merchant_id = $1 AND plan_id = $2 AND subscriber_address = $3
            ORDER BY created_at DESC
            LIMIT 1
            """,
            merchant_id,
            plan_id,
            subscriber_address,
        )
        return self._to_model(record) if record else None

    async def create(
        self,
        *,
        merchant_id: UUID,
        plan_id: UUID,
        subscriber_address: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Subscription:
        record = await self._fetchrow(
            """
            INSERT INTO subscriptions (
                merchant_id, plan_id, subscriber_address, status,
                current_period_start, current_period_end, cancel_at_period_end
            )
            VALUES ($1, $2, $3, 'active', $4, $5, false)
            RETURNING *
            """,
            merchant_id,
            plan_id,
            subscriber_address,
            period_start,
            period_end,
        )
        assert record is not None
        return self._to_model(record)

    async def extend(self, subscription_id: UUID, period_end: datetime) -> Subscription:
        record = await self._fetchrow(
            """
            UPDATE subscriptions
            SET current_period_end = $2,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            subscription_id,
            period_end,
        )
        if record is None:
            raise NotFoundError("Subscription not found")
        return self._to_model(record)

    async def reactivate(
        self, subscription_id: UUID, period_start: datetime, period_end: datetime
    ) -> Subscription:
        record = await self._fetchrow(
            """
            UPDATE subscriptions
            SET status = 'active',
                current_period_start = $2,
                current_period_end = $3,
                cancel_at_period_end = false,
                cancelled_at = NULL,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            subscription_id,
            period_start,
            period_end,
        )
        if record is None:
            raise NotFoundError("Subscription not found")
        return self._to_model(record)

    async def list_live(
        self,
        merchant_id: UUID,
        subscriber_address: str,
        now: datetime,
        *,
        plan_id: UUID | None = None,
    ) -> List[Subscription]:
        """Active or trialing subscriptions whose period has not ended, newest first."""
        records = await self._fetch(
            """
            SELECT *
            FROM subscriptions
            WHERE merchant_id = $1
              AND subscriber_address = $2
              AND status IN ('active', 'trialing')
              AND current_period_end >= $3
              AND ($4::uuid IS NULL OR plan_id = $4)
            ORDER BY created_at DESC
            """,
            merchant_id,
            subscriber_address,
            now,
            plan_id,
        )
        return [self._to_model(r) for r in records]
