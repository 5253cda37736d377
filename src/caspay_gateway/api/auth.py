"""API key authentication and per-merchant rate limiting for handlers."""
from __future__ import annotations

from aiohttp import web

from caspay_gateway.api.utils import ApiError
from caspay_gateway.domain.enums import ADMIN_KEY_PREFIXES, PUBLIC_KEY_PREFIXES, ApiScope
from caspay_gateway.domain.models import KeyValidationError, ValidatedMerchant
from caspay_gateway.services.dependencies import get_api_key_validator, get_rate_limiter
from caspay_gateway.services.rate_limit import rate_limit_headers
from caspay_gateway.settings import settings

API_KEY_HEADER = "X-CasPay-Key"


async def authenticate(
    request: web.Request,
    scope: str,
    *,
    operation: str,
    admin: bool = False,
    max_requests: int | None = None,
) -> tuple[ValidatedMerchant, dict[str, str]]:
    """Validate ``X-CasPay-Key`` then count the call against ``merchant:operation``.

    Returns the merchant and the rate-limit headers to attach to the response.
    """
    validator = await get_api_key_validator(request)
    result = await validator.validate(
        request.headers.get(API_KEY_HEADER),
        scope,
        allowed_prefixes=ADMIN_KEY_PREFIXES if admin else PUBLIC_KEY_PREFIXES,
        origin=request.headers.get("Origin"),
    )
    if isinstance(result, KeyValidationError):
        raise ApiError(result.status, result.error, result.code.value)

    limiter = get_rate_limiter(request)
    outcome = limiter.check(
        f"merchant:{result.merchant_id}:{operation}",
        max_requests or settings.rate_limit_max_requests,
        settings.rate_limit_window_ms,
    )
    headers = rate_limit_headers(outcome)
    if not outcome.allowed:
        raise ApiError(
            429,
            "Rate limit exceeded. Please try again later.",
            "RATE_LIMIT_EXCEEDED",
            headers=headers,
            extra={"retry_after": outcome.retry_after},
        )
    return result, headers


async def authenticate_admin(
    request: web.Request, *, operation: str
) -> tuple[ValidatedMerchant, dict[str, str]]:
    return await authenticate(request, ApiScope.ADMIN.value, operation=operation, admin=True)
