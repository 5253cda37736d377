"""Common exceptions for service and repository layers."""
from __future__ import annotations


class CasPayError(Exception):
    """Base error for the gateway."""


class RepositoryError(CasPayError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class DuplicateTransactionError(RepositoryError):
    """Raised when a payment with the same transaction hash already exists."""


class CasperRpcError(CasPayError):
    """Raised when every configured Casper node failed to answer a JSON-RPC call."""


class InvalidApiKeyFormatError(CasPayError):
    """Raised when a key does not look like ``cp_<type>_<secret>``."""


class TransactionClaimedError(CasPayError):
    """Raised when a transaction hash is already recorded for another merchant."""


class PlanNotFoundError(NotFoundError):
    """Raised when a payment names a subscription plan the merchant does not have."""
