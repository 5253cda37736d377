"""API key and merchant repositories."""
from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from caspay_gateway.core.exceptions import NotFoundError
from caspay_gateway.domain.enums import KeyPrefix
from caspay_gateway.domain.models import ApiKey, Merchant
from caspay_gateway.repositories.base import BaseRepository


class ApiKeyRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> ApiKey:
        return ApiKey.model_validate(dict(record))

    async def get_active_by_hash(self, key_hash: str) -> ApiKey | None:
        record = await self._fetchrow(
            "SELECT * FROM api_keys WHERE key_hash = $1 AND active = true",
            key_hash,
        )
        return self._to_model(record) if record else None

    async def get(self, merchant_id: UUID, key_id: UUID) -> ApiKey:
        record = await self._fetchrow(
            "SELECT * FROM api_keys WHERE merchant_id = $1 AND id = $2",
            merchant_id,
            key_id,
        )
        if record is None:
            raise NotFoundError("API key not found")
        return self._to_model(record)

    async def list_by_merchant(self, merchant_id: UUID) -> List[ApiKey]:
        records = await self._fetch(
            "SELECT * FROM api_keys WHERE merchant_id = $1 ORDER BY created_at DESC",
            merchant_id,
        )
        return [self._to_model(r) for r in records]

    async def create(
        self,
        *,
        merchant_id: UUID,
        name: str | None,
        key_prefix: KeyPrefix,
        key_hash: str,
        key_hint: str,
        permissions: list[str],
        expires_at: datetime | None,
        allowed_domains: list[str] | None = None,
    ) -> ApiKey:
        record = await self._fetchrow(
            """
            INSERT INTO api_keys (
                merchant_id, name, key_prefix, key_hash, key_hint, permissions, expires_at,
                allowed_domains, active
            )
            VALUES ($1, $2, $3, $4, $5, $6::text[], $7, $8::text[], true)
            RETURNING *
            """,
            merchant_id,
            name,
            key_prefix.value,
            key_hash,
            key_hint,
            permissions,
            expires_at,
            allowed_domains,
        )
        assert record is not None
        return self._to_model(record)

    async def set_active(self, merchant_id: UUID, key_id: UUID, active: bool) -> ApiKey:
        record = await self._fetchrow(
            """
            UPDATE api_keys
            SET active = $3
            WHERE merchant_id = $1 AND id = $2
            RETURNING *
            """,
            merchant_id,
            key_id,
            active,
        )
        if record is None:
            raise NotFoundError("API key not found")
        return self._to_model(record)

    async def touch_last_used(self, key_id: UUID) -> None:
        await self._execute(
            "UPDATE api_keys SET last_used_at = now() WHERE id = $1",
            key_id,
        )


class MerchantRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    async def get(self, merchant_id: UUID) -> Merchant | None:
        record = await self._fetchrow(
            """
            SELECT id, merchant_id, wallet_address, status, network
            FROM merchants
            WHERE id = $1
            """,
            merchant_id,
        )
        return Merchant.model_validate(dict(record)) if record else None
