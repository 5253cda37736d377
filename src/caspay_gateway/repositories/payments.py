"""Payment repository (rows consumed by reconciliation and the record route)."""
from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import Pool, Record  # type: ignore[import-untyped]

from caspay_gateway.core.exceptions import DuplicateTransactionError
from caspay_gateway.domain.models import Payment
from caspay_gateway.repositories.base import BaseRepository


class PaymentRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> Payment:
        return Payment.model_validate(dict(record))

    async def is_processed(self, transaction_hash: str) -> bool:
        """True once any payment carrying this hash has left ``pending``."""
        value = await self._fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM payments WHERE transaction_hash = $1 AND status <> 'pending'
            )
            """,
            transaction_hash,
        )
        return bool(value)

    async def get_by_transaction_hash(self, transaction_hash: str) -> Payment | None:
        record = await self._fetchrow(
            "SELECT * FROM payments WHERE transaction_hash = $1",
            transaction_hash,
        )
        return self._to_model(record) if record else None

    async def get_by_id(self, payment_id: UUID) -> Payment | None:
        record = await self._fetchrow(
            "SELECT * FROM payments WHERE id = $1",
            payment_id,
        )
        return self._to_model(record) if record else None

    async def insert_confirmed(
        self,
        *,
        merchant_id: UUID,
        transaction_hash: str,
        payer_address: str,
        amount: float,
        token: str,
        product_id: str | None,
        network: str,
        block_timestamp: datetime | None,
        payment_type: str = "product",
        subscription_plan_id: UUID | None = None,
    ) -> Payment:
        """Insert a verified payment; the unique hash index rejects replays."""
        try:
            record = await self._fetchrow(
                """
                INSERT INTO payments (
                    merchant_id, transaction_hash, payer_address, amount, token,
                    status, product_id, network, block_timestamp,
                    payment_type, subscription_plan_id
                )
                VALUES ($1, $2, $3, $4, $5, 'confirmed', $6, $7, $8, $9, $10)
                RETURNING *
                """,
                merchant_id,
                transaction_hash,
                payer_address,
                amount,
                token,
                product_id,
                network,
                block_timestamp,
                payment_type,
                subscription_plan_id,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateTransactionError(transaction_hash) from exc
        assert record is not None
        return self._to_model(record)

    async def confirm_pending(
        self,
        payment_id: UUID,
        *,
        transaction_hash: str,
        payer_address: str | None,
        block_timestamp: datetime | None,
    ) -> Payment | None:
        """Move a pending payment to confirmed; None when the row was not pending."""
        try:
            record = await self._fetchrow(
                """
                UPDATE payments
                SET status = 'confirmed',
                    transaction_hash = $2,
                    payer_address = COALESCE($3, payer_address),
                    block_timestamp = $4,
                    updated_at = now()
                WHERE id = $1 AND status = 'pending'
                RETURNING *
                """,
                payment_id,
                transaction_hash,
                payer_address,
                block_timestamp,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateTransactionError(transaction_hash) from exc
        return self._to_model(record) if record else None

    async def list_pending_with_hash(self, *, limit: int = 100) -> List[Payment]:
        records = await self._fetch(
            """
            SELECT *
            FROM payments
            WHERE status = 'pending'
              AND transaction_hash IS NOT NULL
            ORDER BY created_at ASC
            LIMIT $1
            """,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def expire_pending(self, now: datetime, *, limit: int = 100) -> List[Payment]:
        """Fail pending payments whose ``expires_at`` has passed; returns the rows changed."""
        records = await self._fetch(
            """
            UPDATE payments
            SET status = 'failed',
                updated_at = now()
            WHERE id IN (
                SELECT id
                FROM payments
                WHERE status = 'pending'
                  AND expires_at IS NOT NULL
                  AND expires_at < $1
                ORDER BY expires_at ASC
                LIMIT $2
            )
              AND status = 'pending'
            RETURNING *
            """,
            now,
            limit,
        )
        return [self._to_model(r) for r in records]
