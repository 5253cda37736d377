"""Webhook dispatch (signed fan-out, delivery log, retries) and endpoint management."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Sequence
from uuid import UUID

import structlog
from aiohttp import ClientSession

from caspay_gateway.core.exceptions import NotFoundError
from caspay_gateway.domain.events import PingEventData, WebhookEnvelope
from caspay_gateway.domain.models import DeliveryOutcome, WebhookDelivery, WebhookEndpoint
from caspay_gateway.repositories.webhooks import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
)
from caspay_gateway.services.signatures import generate_webhook_secret, sign
from caspay_gateway.settings import settings
from caspay_gateway.webhooks_dispatcher import build_headers, encode_payload, post_webhook

logger = structlog.get_logger(__name__)

WILDCARD = "*"
TEST_EVENT = "test.webhook"

# Seconds to wait after attempt N (1-based); attempts past the table reuse the last entry.
RETRY_DELAYS_SECONDS: tuple[int, ...] = (60, 300, 1500, 7200, 36000)
DEFAULT_MAX_RETRIES = 5


def matches_event_filter(event_type: str, patterns: Iterable[str]) -> bool:
    """Exact name, ``*`` for everything, or ``family.*`` for a whole family."""
    for pattern in patterns:
        if pattern == WILDCARD or pattern == event_type:
            return True
        if pattern.endswith(".*") and event_type.startswith(pattern[:-1]):
            return True
    return False


def calculate_next_retry(
    attempt: int,
    max_retries: int = DEFAULT_MAX_RETRIES,
    now: datetime | None = None,
) -> datetime | None:
    """When to retry after ``attempt`` failed, or None once retries are exhausted."""
    if attempt >= max_retries:
        return None
    index = min(max(attempt, 1) - 1, len(RETRY_DELAYS_SECONDS) - 1)
    base = now or datetime.now(timezone.utc)
    return base + timedelta(seconds=RETRY_DELAYS_SECONDS[index])


class WebhookDispatcher:
    def __init__(
        self,
        endpoint_repository: WebhookEndpointRepository,
        delivery_repository: WebhookDeliveryRepository,
        session: ClientSession,
        *,
        timeout_s: float | None = None,
        max_retries: int | None = None,
    ):
        self._endpoints = endpoint_repository
        self._deliveries = delivery_repository
        self._session = session
        self._timeout_s = timeout_s if timeout_s is not None else settings.webhook_request_timeout_seconds
        self._max_retries = max_retries if max_retries is not None else settings.webhook_max_retries

    async def trigger(
        self,
        merchant_id: UUID,
        event_type: str,
        data: Any,
        *,
        public_merchant_id: str | None = None,
    ) -> None:
        """Deliver an event to every subscribed endpoint. Never raises."""
        try:
            await self._trigger(merchant_id, event_type, data, public_merchant_id)
        except Exception:
            logger.exception(
                "webhook trigger failed",
                merchant_id=str(merchant_id),
                event_type=event_type,
            )

    async def _trigger(
        self,
        merchant_id: UUID,
        event_type: str,
        data: Any,
        public_merchant_id: str | None,
    ) -> None:
        endpoints = await self._endpoints.list_active(merchant_id)
        subscribed = [ep for ep in endpoints if matches_event_filter(event_type, ep.events)]
        if not subscribed:
            logger.debug(
                "no webhook endpoints subscribed",
                merchant_id=str(merchant_id),
                event_type=event_type,
            )
            return

        envelope = WebhookEnvelope.build(
            event_type, data, merchant_id=public_merchant_id or str(merchant_id)
        )
        payload = envelope.to_payload()
        results = await asyncio.gather(
            *(self.deliver(ep, payload) for ep in subscribed),
            return_exceptions=True,
        )
        for endpoint, result in zip(subscribed, results):
            if isinstance(result, BaseException):
                logger.error(
                    "webhook delivery crashed",
                    endpoint_id=str(endpoint.id),
                    event_type=event_type,
                    exc_info=(type(result), result, result.__traceback__),
                )

    async def deliver(
        self, endpoint: WebhookEndpoint, payload: dict[str, Any]
    ) -> WebhookDelivery:
        """First attempt for one endpoint; always leaves a delivery row behind."""
        event_type = payload["event"]
        outcome = await self._send(endpoint, payload)
        now = datetime.now(timezone.utc)
        delivery = await self._deliveries.insert(
            webhook_endpoint_id=endpoint.id,
            event_type=event_type,
            payload=payload,
            response_status=outcome.status,
            response_body=outcome.body if outcome.body is not None else outcome.error,
            response_headers=outcome.headers,
            delivered_at=now if outcome.success else None,
            next_retry_at=None if outcome.success else calculate_next_retry(
                1, self._max_retries, now
            ),
            attempt_count=1,
        )
        self._log_outcome(endpoint, delivery, outcome)
        return delivery

    async def retry_delivery(
        self, delivery_id: UUID, *, now: datetime | None = None, claim: bool = False
    ) -> WebhookDelivery | None:
        """Re-send a stored payload with the endpoint's current secret.

        With ``claim`` set, a delivery another worker already picked up (its
        ``next_retry_at`` cleared) is skipped and None is returned.
        """
        delivery = await self._deliveries.get_by_id(delivery_id)
        if delivery is None:
            raise NotFoundError("Webhook delivery not found")
        if delivery.succeeded:
            return delivery

        claimed = await self._deliveries.clear_next_retry(delivery.id)
        if claim and not claimed:
            return None

        attempt = delivery.attempt_count + 1
        endpoint = await self._endpoints.get_by_id(delivery.webhook_endpoint_id)
        if endpoint is None or not endpoint.active:
            logger.info(
                "webhook retry abandoned, endpoint gone or inactive",
                delivery_id=str(delivery.id),
            )
            return delivery.model_copy(update={"next_retry_at": None})

        outcome = await self._send(endpoint, delivery.payload)
        current = now or datetime.now(timezone.utc)
        updates = {
            "attempt_count": attempt,
            "response_status": outcome.status,
            "response_body": outcome.body if outcome.body is not None else outcome.error,
            "response_headers": outcome.headers,
            "delivered_at": current if outcome.success else None,
            "next_retry_at": None if outcome.success else calculate_next_retry(
                attempt, self._max_retries, current
            ),
        }
        await self._deliveries.mark_attempt(delivery.id, **updates)
        updated = delivery.model_copy(update=updates)
        self._log_outcome(endpoint, updated, outcome)
        return updated

    async def retry_due(self, now: datetime, *, limit: int | None = None) -> dict[str, int]:
        due = await self._deliveries.list_due(
            now, limit=limit or settings.webhook_retry_batch_size
        )
        summary = {"delivered": 0, "rescheduled": 0, "exhausted": 0, "skipped": 0}
        for delivery in due:
            try:
                result = await self.retry_delivery(delivery.id, now=now, claim=True)
            except Exception:
                logger.exception("webhook retry failed", delivery_id=str(delivery.id))
                summary["skipped"] += 1
                continue
            if result is None:
                summary["skipped"] += 1
            elif result.succeeded:
                summary["delivered"] += 1
            elif result.next_retry_at is not None:
                summary["rescheduled"] += 1
            else:
                summary["exhausted"] += 1
        return summary

    async def _send(self, endpoint: WebhookEndpoint, payload: dict[str, Any]) -> DeliveryOutcome:
        body = encode_payload(payload)
        headers = build_headers(
            signature=sign(body, endpoint.secret),
            event_type=payload["event"],
            timestamp=payload["timestamp"],
        )
        return await post_webhook(
            self._session, endpoint.url, body=body, headers=headers, timeout_s=self._timeout_s
        )

    @staticmethod
    def _log_outcome(
        endpoint: WebhookEndpoint, delivery: WebhookDelivery, outcome: DeliveryOutcome
    ) -> None:
        log = logger.info if outcome.success else logger.warning
        log(
            "webhook delivery attempt",
            endpoint_id=str(endpoint.id),
            delivery_id=str(delivery.id),
            event_type=delivery.event_type,
            attempt=delivery.attempt_count,
            status=outcome.status,
            error=outcome.error,
            duration_ms=round(outcome.duration_ms, 1),
            next_retry_at=delivery.next_retry_at.isoformat() if delivery.next_retry_at else None,
        )


class WebhookService:
    def __init__(
        self,
        endpoint_repository: WebhookEndpointRepository,
        delivery_repository: WebhookDeliveryRepository,
        dispatcher: WebhookDispatcher,
    ):
        self._endpoints = endpoint_repository
        self._deliveries = delivery_repository
        self._dispatcher = dispatcher

    async def create_endpoint(
        self,
        merchant_id: UUID,
        *,
        url: str,
        events: Sequence[str] | None = None,
        description: str | None = None,
    ) -> WebhookEndpoint:
        endpoint = await self._endpoints.create(
            merchant_id=merchant_id,
            url=url,
            secret=generate_webhook_secret(),
            description=description,
            events=list(events) if events else [WILDCARD],
        )
        logger.info("webhook endpoint created", endpoint_id=str(endpoint.id))
        return endpoint

    async def list_endpoints(self, merchant_id: UUID) -> List[WebhookEndpoint]:
        return await self._endpoints.list_by_merchant(merchant_id)

    async def get_endpoint(self, merchant_id: UUID, endpoint_id: UUID) -> WebhookEndpoint:
        return await self._endpoints.get(merchant_id, endpoint_id)

    async def update_endpoint(
        self, merchant_id: UUID, endpoint_id: UUID, updates: dict[str, Any]
    ) -> WebhookEndpoint:
        return await self._endpoints.update(merchant_id, endpoint_id, updates)

    async def delete_endpoint(self, merchant_id: UUID, endpoint_id: UUID) -> None:
        await self._endpoints.delete(merchant_id, endpoint_id)

    async def toggle_endpoint(self, merchant_id: UUID, endpoint_id: UUID) -> WebhookEndpoint:
        current = await self._endpoints.get(merchant_id, endpoint_id)
        return await self._endpoints.update(
            merchant_id, endpoint_id, {"active": not current.active}
        )

    async def regenerate_secret(self, merchant_id: UUID, endpoint_id: UUID) -> WebhookEndpoint:
        return await self._endpoints.update(
            merchant_id, endpoint_id, {"secret": generate_webhook_secret()}
        )

    async def send_test_event(
        self, merchant_id: UUID, endpoint_id: UUID, *, public_merchant_id: str
    ) -> WebhookDelivery:
        """Deliver ``test.webhook`` to one endpoint regardless of its event filter."""
        endpoint = await self._endpoints.get(merchant_id, endpoint_id)
        envelope = WebhookEnvelope.build(TEST_EVENT, PingEventData(), merchant_id=public_merchant_id)
        return await self._dispatcher.deliver(endpoint, envelope.to_payload())

    async def list_deliveries(
        self, merchant_id: UUID, endpoint_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookDelivery], int]:
        await self._endpoints.get(merchant_id, endpoint_id)
        return await self._deliveries.list_by_endpoint(endpoint_id, limit=limit, offset=offset)

    async def list_recent_deliveries(
        self, merchant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookDelivery], int]:
        return await self._deliveries.list_by_merchant(merchant_id, limit=limit, offset=offset)

    async def retry_delivery(self, merchant_id: UUID, delivery_id: UUID) -> WebhookDelivery:
        delivery = await self._deliveries.get_by_id(delivery_id)
        if delivery is None:
            raise NotFoundError("Webhook delivery not found")
        # ownership check; raises NotFoundError for another merchant's endpoint
        await self._endpoints.get(merchant_id, delivery.webhook_endpoint_id)
        result = await self._dispatcher.retry_delivery(delivery_id)
        assert result is not None
        return result
