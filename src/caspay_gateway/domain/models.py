"""Pydantic models representing the gateway's domain entities."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from caspay_gateway.domain.enums import (
    KeyPrefix,
    MerchantStatus,
    Network,
    PaymentStatus,
    PaymentType,
    ReconciliationOutcome,
    SubscriptionInterval,
    SubscriptionStatus,
    ValidationErrorCode,
)


class Merchant(BaseModel):
    id: UUID
    merchant_id: str
    wallet_address: str
    status: MerchantStatus = MerchantStatus.PENDING
    network: Network = Network.TESTNET


class ApiKey(BaseModel):
    id: UUID
    merchant_id: UUID
    name: str | None = None
    key_prefix: KeyPrefix
    key_hash: str
    key_hint: str | None = None
    permissions: list[str] = Field(default_factory=list)
    allowed_domains: list[str] | None = None
    active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime

    def public_view(self) -> dict[str, Any]:
        """Serializable form without the stored hash."""
        return self.model_dump(mode="json", exclude={"key_hash"})


class IssuedApiKey(BaseModel):
    """A freshly created key; ``key`` is the only time the plaintext is exposed."""

    api_key: ApiKey
    key: str


class RateLimitHints(BaseModel):
    requests_per_minute: int = 60
    requests_per_hour: int = 1000


class ValidatedMerchant(BaseModel):
    id: UUID
    merchant_id: str
    wallet_address: str
    status: MerchantStatus
    network: Network
    api_key_id: UUID
    key_prefix: KeyPrefix
    permissions: list[str]
    rate_limit: RateLimitHints = Field(default_factory=RateLimitHints)


class KeyValidationError(BaseModel):
    """Credential rejection returned (not raised) by the validator."""

    error: str
    code: ValidationErrorCode
    status: int


class WebhookEndpoint(BaseModel):
    id: UUID
    merchant_id: UUID
    url: str
    secret: str
    description: str | None = None
    events: list[str] = Field(default_factory=lambda: ["*"])
    active: bool = True
    created_at: datetime
    updated_at: datetime


class WebhookDelivery(BaseModel):
    id: UUID
    webhook_endpoint_id: UUID
    event_type: str
    payload: dict[str, Any]
    response_status: int | None = None
    response_body: str | None = None
    response_headers: dict[str, str] | None = None
    attempt_count: int = 1
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None
    created_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.delivered_at is not None


class DeliveryOutcome(BaseModel):
    """Result of a single HTTP POST to a webhook endpoint."""

    success: bool
    status: int | None = None
    body: str | None = None
    headers: dict[str, str] | None = None
    error: str | None = None
    duration_ms: float = 0.0


class Payment(BaseModel):
    id: UUID
    merchant_id: UUID
    transaction_hash: str | None = None
    payer_address: str | None = None
    amount: float
    token: str = "NATIVE"
    status: PaymentStatus = PaymentStatus.PENDING
    payment_type: PaymentType = PaymentType.PRODUCT
    product_id: str | None = None
    subscription_plan_id: UUID | None = None
    expected_recipient: str | None = None
    network: Network = Network.TESTNET
    expires_at: datetime | None = None
    block_timestamp: datetime | None = None
    created_at: datetime

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            include={"id", "transaction_hash", "amount", "token", "status", "created_at"},
        )


class SubscriptionPlan(BaseModel):
    id: UUID
    merchant_id: UUID
    plan_id: str
    name: str
    description: str | None = None
    price: float
    currency: str = "CSPR"
    interval: SubscriptionInterval = SubscriptionInterval.MONTHLY
    interval_count: int = 1
    trial_days: int = 0
    active: bool = True
    created_at: datetime

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json", include={"plan_id", "name", "price", "currency", "interval"}
        )


class Subscription(BaseModel):
    id: UUID
    merchant_id: UUID
    plan_id: UUID
    subscriber_address: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            include={"id", "status", "current_period_start", "current_period_end"},
        )


class SubscriptionCheck(BaseModel):
    """Access answer for one subscriber; ``subscription`` is the most recent live one."""

    is_active: bool
    subscription: Subscription | None = None
    plan: SubscriptionPlan | None = None
    count: int = 0
    message: str | None = None


class TransactionVerification(BaseModel):
    """Outcome of cross-checking an on-chain deploy; never persisted."""

    valid: bool
    deploy_hash: str
    amount: int | None = None  # motes
    recipient: str | None = None
    sender: str | None = None
    timestamp: str | None = None
    error: str | None = None


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    payment_id: UUID
    deploy_hash: str
    verification: TransactionVerification | None = None
