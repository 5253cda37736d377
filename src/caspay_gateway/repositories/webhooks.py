"""Webhook repositories (merchant endpoints + delivery log)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from caspay_gateway.core.exceptions import NotFoundError
from caspay_gateway.domain.models import WebhookDelivery, WebhookEndpoint
from caspay_gateway.repositories.base import BaseRepository

_UPDATABLE_ENDPOINT_FIELDS = ("url", "description", "events", "active", "secret")


class WebhookEndpointRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookEndpoint:
        return WebhookEndpoint.model_validate(dict(record))

    async def create(
        self,
        *,
        merchant_id: UUID,
        url: str,
        secret: str,
        description: str | None,
        events: list[str],
    ) -> WebhookEndpoint:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_endpoints (merchant_id, url, secret, description, events, active)
            VALUES ($1, $2, $3, $4, $5::text[], true)
            RETURNING *
            """,
            merchant_id,
            url,
            secret,
            description,
            events,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, merchant_id: UUID, endpoint_id: UUID) -> WebhookEndpoint:
        record = await self._fetchrow(
            "SELECT * FROM webhook_endpoints WHERE merchant_id = $1 AND id = $2",
            merchant_id,
            endpoint_id,
        )
        if record is None:
            raise NotFoundError("Webhook endpoint not found")
        return self._to_model(record)

    async def get_by_id(self, endpoint_id: UUID) -> WebhookEndpoint | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_endpoints WHERE id = $1",
            endpoint_id,
        )
        return self._to_model(record) if record else None

    async def list_by_merchant(self, merchant_id: UUID) -> List[WebhookEndpoint]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_endpoints
            WHERE merchant_id = $1
            ORDER BY created_at DESC
            """,
            merchant_id,
        )
        return [self._to_model(r) for r in records]

    async def list_active(self, merchant_id: UUID) -> List[WebhookEndpoint]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_endpoints
            WHERE merchant_id = $1
              AND active = true
            ORDER BY created_at ASC
            """,
            merchant_id,
        )
        return [self._to_model(r) for r in records]

    async def update(
        self, merchant_id: UUID, endpoint_id: UUID, updates: dict[str, Any]
    ) -> WebhookEndpoint:
        assignments: list[str] = []
        values: list[Any] = [merchant_id, endpoint_id]
        idx = 3
        for field in _UPDATABLE_ENDPOINT_FIELDS:
            if field not in updates:
                continue
            cast = "::text[]" if field == "events" else ""
            assignments.append(f"{field} = ${idx}{cast}")
            values.append(updates[field])
            idx += 1
        if not assignments:
            return await self.get(merchant_id, endpoint_id)
        assignments.append("updated_at = now()")
        record = await self._fetchrow(
            f"""
            UPDATE webhook_endpoints
            SET {", ".join(assignments)}
            WHERE merchant_id = $1 AND id = $2
            RETURNING *
            """,
            *values,
        )
        if record is None:
            raise NotFoundError("Webhook endpoint not found")
        return self._to_model(record)

    async def delete(self, merchant_id: UUID, endpoint_id: UUID) -> None:
        record = await self._fetchrow(
            """
            DELETE FROM webhook_endpoints
            WHERE merchant_id = $1 AND id = $2
            RETURNING id
            """,
            merchant_id,
            endpoint_id,
        )
        if record is None:
            raise NotFoundError("Webhook endpoint not found")


class WebhookDeliveryRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookDelivery:
        return WebhookDelivery.model_validate(WebhookDeliveryRepository._normalize(dict(record)))

    @staticmethod
    def _normalize(payload: dict[str, Any]) -> dict[str, Any]:
        for column in ("payload", "response_headers"):
            value = payload.get(column)
            if isinstance(value, str):
                payload[column] = json.loads(value)
        return payload

    async def insert(
        self,
        *,
        webhook_endpoint_id: UUID,
        event_type: str,
        payload: dict[str, Any],
        response_status: int | None,
        response_body: str | None,
        response_headers: dict[str, str] | None,
        delivered_at: datetime | None,
        next_retry_at: datetime | None,
        attempt_count: int = 1,
    ) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                webhook_endpoint_id,
                event_type,
                payload,
                response_status,
                response_body,
                response_headers,
                attempt_count,
                delivered_at,
                next_retry_at
            )
            VALUES ($1, $2, $3::jsonb, $4, $5, $6::jsonb, $7, $8, $9)
            RETURNING *
            """,
            webhook_endpoint_id,
            event_type,
            json.dumps(payload),
            response_status,
            response_body,
            json.dumps(response_headers) if response_headers is not None else None,
            attempt_count,
            delivered_at,
            next_retry_at,
        )
        assert record is not None
        return self._to_model(record)

    async def get_by_id(self, delivery_id: UUID) -> WebhookDelivery | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE id = $1",
            delivery_id,
        )
        return self._to_model(record) if record else None

    async def list_by_endpoint(
        self, endpoint_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookDelivery], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE webhook_endpoint_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            endpoint_id,
            limit,
            offset,
        )
        return self._collect(records)

    async def list_by_merchant(
        self, merchant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookDelivery], int]:
        records = await self._fetch(
            """
            SELECT d.*,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries d
            JOIN webhook_endpoints e ON e.id = d.webhook_endpoint_id
            WHERE e.merchant_id = $1
            ORDER BY d.created_at DESC
            LIMIT $2 OFFSET $3
            """,
            merchant_id,
            limit,
            offset,
        )
        return self._collect(records)

    def _collect(self, records: Any) -> Tuple[List[WebhookDelivery], int]:
        items: List[WebhookDelivery] = []
        total = 0
        for rec in records:
            rec_dict = dict(rec)
            total = int(rec_dict.pop("total_count", 0) or 0)
            items.append(WebhookDelivery.model_validate(self._normalize(rec_dict)))
        return items, total

    async def list_due(self, now: datetime, *, limit: int = 100) -> List[WebhookDelivery]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_deliveries
            WHERE delivered_at IS NULL
              AND next_retry_at IS NOT NULL
              AND next_retry_at <= $1
            ORDER BY next_retry_at ASC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def clear_next_retry(self, delivery_id: UUID) -> bool:
        """Claim a due delivery by nulling its schedule; False if another caller won."""
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET next_retry_at = NULL
            WHERE id = $1
              AND delivered_at IS NULL
              AND next_retry_at IS NOT NULL
            """,
            delivery_id,
        )
        return self._affected(result) == 1

    async def mark_attempt(
        self,
        delivery_id: UUID,
        *,
        attempt_count: int,
        response_status: int | None,
        response_body: str | None,
        response_headers: dict[str, str] | None,
        delivered_at: datetime | None,
        next_retry_at: datetime | None,
    ) -> None:
        await self._execute(
            """
            UPDATE webhook_deliveries
            SET attempt_count = $2,
                response_status = $3,
                response_body = $4,
                response_headers = $5::jsonb,
                delivered_at = $6,
                next_retry_at = $7
            WHERE id = $1
            """,
            delivery_id,
            attempt_count,
            response_status,
            response_body,
            json.dumps(response_headers) if response_headers is not None else None,
            delivered_at,
            next_retry_at,
        )
