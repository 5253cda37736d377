"""Domain enums for keys, merchants, payments and validation outcomes."""
from __future__ import annotations

from enum import Enum


class KeyPrefix(str, Enum):
    """Credential classes, identified by their literal key prefix."""

    LIVE = "cp_live_"
    TEST = "cp_test_"
    SECRET = "cp_secret_"

    @property
    def key_type(self) -> str:
        return self.value[len("cp_"):-1]


PUBLIC_KEY_PREFIXES: frozenset[KeyPrefix] = frozenset({KeyPrefix.LIVE, KeyPrefix.TEST})
ADMIN_KEY_PREFIXES: frozenset[KeyPrefix] = frozenset({KeyPrefix.SECRET})


class ApiScope(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"
    READ_SUBSCRIPTIONS = "read:subscriptions"
    READ_PAYMENTS = "read:payments"
    WRITE_PAYMENTS = "write:payments"


DEFAULT_KEY_SCOPES: tuple[str, ...] = (
    ApiScope.READ_SUBSCRIPTIONS.value,
    ApiScope.READ_PAYMENTS.value,
    ApiScope.WRITE_PAYMENTS.value,
)
DEFAULT_SECRET_KEY_SCOPES: tuple[str, ...] = (
    ApiScope.ADMIN.value,
    ApiScope.READ.value,
    ApiScope.WRITE.value,
)


class MerchantStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class Network(str, Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PaymentType(str, Enum):
    PRODUCT = "product"
    SUBSCRIPTION = "subscription"


class SubscriptionInterval(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class ValidationErrorCode(str, Enum):
    """Machine-readable credential rejection codes."""

    INVALID_KEY = "INVALID_KEY"
    EXPIRED_KEY = "EXPIRED_KEY"
    INACTIVE_MERCHANT = "INACTIVE_MERCHANT"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    DOMAIN_NOT_ALLOWED = "DOMAIN_NOT_ALLOWED"


class ReconciliationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_PROCESSED = "already_processed"
    INVALID = "invalid"
    NOT_PENDING = "not_pending"
    NOT_FOUND = "not_found"
