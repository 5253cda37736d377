"""Webhook event envelopes.

Each event family has a typed ``data`` model; anything the gateway does not
know yet (or that fails to validate against its family) travels as
:class:`OpaqueEventData` so new event types never break delivery.
"""
from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger(__name__)


class PaymentEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["payment"] = "payment"
    payment_id: str
    transaction_hash: str | None = None
    payer: str | None = None
    amount: float | None = None
    currency: str = "CSPR"
    product_id: str | None = None
    reason: str | None = None


class SubscriptionEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["subscription"] = "subscription"
    subscription_id: str
    plan_id: str | None = None
    payment_id: str | None = None
    transaction_hash: str | None = None
    subscriber: str | None = None
    amount: float | None = None
    currency: str = "CSPR"


class PingEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["test"] = "test"
    message: str = "This is a test webhook from CasPay"


class OpaqueEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["opaque"] = "opaque"


EventData = Union[PaymentEventData, SubscriptionEventData, PingEventData, OpaqueEventData]

_FAMILIES: dict[str, type[BaseModel]] = {
    "payment": PaymentEventData,
    "subscription": SubscriptionEventData,
    "test": PingEventData,
}


def generate_event_id() -> str:
    """``evt_<base36 millis>_<random>``; receivers dedupe on this."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = digits[rem] + encoded
    return f"evt_{encoded or '0'}_{secrets.token_hex(4)}"


def build_event_data(event_type: str, data: Any) -> EventData:
    if isinstance(data, (PaymentEventData, SubscriptionEventData, PingEventData, OpaqueEventData)):
        return data
    if isinstance(data, BaseModel):
        raw = data.model_dump(mode="json")
    elif isinstance(data, Mapping):
        raw = dict(data)
    else:
        return OpaqueEventData(value=data)
    raw.pop("kind", None)
    family = _FAMILIES.get(event_type.split(".", 1)[0])
    if family is not None:
        try:
            return family.model_validate(raw)  # type: ignore[return-value]
        except ValidationError:
            logger.warning("webhook event data does not match its family", event_type=event_type)
    return OpaqueEventData.model_validate(raw)


class WebhookEnvelope(BaseModel):
    """Body POSTed to merchant endpoints."""

    event: str
    data: EventData = Field(discriminator="kind")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    merchant_id: str
    id: str = Field(default_factory=generate_event_id)

    @classmethod
    def build(
        cls, event_type: str, data: Any, merchant_id: str
    ) -> "WebhookEnvelope":
        return cls(event=event_type, data=build_event_data(event_type, data), merchant_id=merchant_id)

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["data"].pop("kind", None)
        return payload
