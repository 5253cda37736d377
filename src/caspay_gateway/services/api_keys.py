"""Credential validation and API key lifecycle."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Collection, List, Sequence
from urllib.parse import urlsplit
from uuid import UUID

import structlog

from caspay_gateway.domain.enums import (
    DEFAULT_KEY_SCOPES,
    DEFAULT_SECRET_KEY_SCOPES,
    PUBLIC_KEY_PREFIXES,
    KeyPrefix,
    MerchantStatus,
    Network,
    ValidationErrorCode,
)
from caspay_gateway.domain.models import (
    ApiKey,
    IssuedApiKey,
    KeyValidationError,
    ValidatedMerchant,
)
from caspay_gateway.repositories.api_keys import ApiKeyRepository, MerchantRepository
from caspay_gateway.services.credentials import (
    generate_api_key,
    generate_key_hint,
    hash_secret,
    key_prefix_of,
)
from caspay_gateway.tasks import spawn_detached

logger = structlog.get_logger(__name__)

_NETWORK_FOR_PREFIX = {
    KeyPrefix.LIVE: Network.MAINNET,
    KeyPrefix.TEST: Network.TESTNET,
}


def _default_scopes(prefix: KeyPrefix) -> list[str]:
    if prefix is KeyPrefix.SECRET:
        return list(DEFAULT_SECRET_KEY_SCOPES)
    return list(DEFAULT_KEY_SCOPES)


def origin_allowed(origin: str | None, allowed_domains: Collection[str]) -> bool:
    """Match the Origin host against exact domains and ``*.example.com`` wildcards.

    A wildcard also admits the bare base domain. A missing or unparsable
    origin never matches.
    """
    if not origin:
        return False
    try:
        hostname = urlsplit(origin).hostname
    except ValueError:
        return False
    if not hostname:
        return False
    for domain in allowed_domains:
        domain = domain.lower()
        if hostname == domain:
            return True
        if domain.startswith("*.") and (
            hostname == domain[2:] or hostname.endswith(domain[1:])
        ):
            return True
    return False


def _reject(code: ValidationErrorCode, status: int, error: str) -> KeyValidationError:
    return KeyValidationError(error=error, code=code, status=status)


class ApiKeyValidator:
    """Resolves a presented key to the merchant it acts for.

    Rejections are returned as :class:`KeyValidationError` values so route
    handlers can turn them into responses without exception plumbing.
    """

    def __init__(
        self,
        key_repository: ApiKeyRepository,
        merchant_repository: MerchantRepository,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._keys = key_repository
        self._merchants = merchant_repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def validate(
        self,
        raw_key: str | None,
        required_scope: str,
        *,
        allowed_prefixes: Collection[KeyPrefix] = PUBLIC_KEY_PREFIXES,
        origin: str | None = None,
    ) -> ValidatedMerchant | KeyValidationError:
        if not raw_key:
            return _reject(ValidationErrorCode.INVALID_KEY, 401, "API key is required")

        prefix = key_prefix_of(raw_key)
        if prefix is None or prefix not in allowed_prefixes:
            return _reject(ValidationErrorCode.INVALID_KEY, 401, "Invalid API key format")

        try:
            return await self._resolve(raw_key, prefix, required_scope, origin)
        except Exception:
            logger.exception("api key validation failed", key_prefix=prefix.value)
            return _reject(ValidationErrorCode.INVALID_KEY, 500, "Internal server error")

    async def _resolve(
        self, raw_key: str, prefix: KeyPrefix, required_scope: str, origin: str | None
    ) -> ValidatedMerchant | KeyValidationError:
        api_key = await self._keys.get_active_by_hash(hash_secret(raw_key))
        if api_key is None or api_key.key_prefix is not prefix:
            return _reject(ValidationErrorCode.INVALID_KEY, 401, "Invalid API key")

        if api_key.expires_at is not None and api_key.expires_at < self._clock():
            return _reject(ValidationErrorCode.EXPIRED_KEY, 401, "API key has expired")

        merchant = await self._merchants.get(api_key.merchant_id)
        if merchant is None or merchant.status is not MerchantStatus.ACTIVE:
            return _reject(
                ValidationErrorCode.INACTIVE_MERCHANT, 403, "Merchant account is not active"
            )

        bound_network = _NETWORK_FOR_PREFIX.get(prefix)
        if bound_network is not None and merchant.network is not bound_network:
            if prefix is KeyPrefix.TEST:
                error = "Test API keys can only be used with testnet merchants"
            else:
                error = "Live API keys can only be used with mainnet merchants"
            return _reject(ValidationErrorCode.INVALID_KEY, 403, error)

        if required_scope not in api_key.permissions:
            return _reject(
                ValidationErrorCode.INSUFFICIENT_PERMISSIONS,
                403,
                f"Insufficient permissions. Required: {required_scope}",
            )

        # Only live keys are bound to the merchant's sites
        if (
            prefix is KeyPrefix.LIVE
            and api_key.allowed_domains
            and not origin_allowed(origin, api_key.allowed_domains)
        ):
            return _reject(
                ValidationErrorCode.DOMAIN_NOT_ALLOWED, 403, "Domain not allowed for this API key"
            )

        spawn_detached(
            self._keys.touch_last_used(api_key.id),
            name=f"api_key_last_used:{api_key.id}",
        )

        return ValidatedMerchant(
            id=merchant.id,
            merchant_id=merchant.merchant_id,
            wallet_address=merchant.wallet_address,
            status=merchant.status,
            network=merchant.network,
            api_key_id=api_key.id,
            key_prefix=prefix,
            permissions=list(api_key.permissions),
        )


class ApiKeyService:
    def __init__(self, key_repository: ApiKeyRepository):
        self._keys = key_repository

    async def create_key(
        self,
        merchant_id: UUID,
        *,
        name: str | None,
        key_type: str,
        permissions: Sequence[str] | None = None,
        expires_at: datetime | None = None,
        allowed_domains: Sequence[str] | None = None,
    ) -> IssuedApiKey:
        """Issue a key; the plaintext is only ever available on the returned value."""
        raw_key = generate_api_key(key_type)
        prefix = key_prefix_of(raw_key)
        assert prefix is not None
        api_key = await self._keys.create(
            merchant_id=merchant_id,
            name=name,
            key_prefix=prefix,
            key_hash=hash_secret(raw_key),
            key_hint=generate_key_hint(raw_key),
            permissions=list(permissions) if permissions else _default_scopes(prefix),
            expires_at=expires_at,
            allowed_domains=list(allowed_domains) if allowed_domains else None,
        )
        logger.info(
            "api key created",
            api_key_id=str(api_key.id),
            key_prefix=prefix.value,
        )
        return IssuedApiKey(api_key=api_key, key=raw_key)

    async def list_keys(self, merchant_id: UUID) -> List[ApiKey]:
        return await self._keys.list_by_merchant(merchant_id)

    async def rotate_key(self, merchant_id: UUID, key_id: UUID) -> IssuedApiKey:
        """Issue a replacement with the same settings, then deactivate the old key."""
        old = await self._keys.get(merchant_id, key_id)
        issued = await self.create_key(
            merchant_id,
            name=old.name,
            key_type=old.key_prefix.key_type,
            permissions=old.permissions,
            expires_at=old.expires_at,
            allowed_domains=old.allowed_domains,
        )
        await self._keys.set_active(merchant_id, key_id, False)
        logger.info(
            "api key rotated",
            old_api_key_id=str(key_id),
            api_key_id=str(issued.api_key.id),
        )
        return issued

    async def deactivate_key(self, merchant_id: UUID, key_id: UUID) -> ApiKey:
        return await self._keys.set_active(merchant_id, key_id, False)
