"""Subscription access check for merchant SDKs (public keys)."""
from __future__ import annotations

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from caspay_gateway.api.auth import authenticate
from caspay_gateway.api.utils import ApiError
from caspay_gateway.domain.enums import ApiScope
from caspay_gateway.services.dependencies import get_subscription_service
from caspay_gateway.settings import settings

routes = web.RouteTableDef()

_FIELD_ERROR_CODES = {
    "merchant_id": ("Invalid merchant_id format", "INVALID_MERCHANT_ID"),
    "subscriber": ("Invalid subscriber address format", "INVALID_SUBSCRIBER"),
    "plan_id": ("Invalid plan_id format", "INVALID_PLAN_ID"),
}


class SubscriptionCheckQuery(BaseModel):
    merchant_id: str = Field(pattern=r"^MERCH_")
    subscriber: str = Field(min_length=10, max_length=128)
    plan_id: str | None = Field(default=None, pattern=r"^plan_")


@routes.get("/api/v1/subscriptions/check")
async def check_subscription(request: web.Request):
    merchant, headers = await authenticate(
        request,
        ApiScope.READ_SUBSCRIPTIONS.value,
        operation="subscription-check",
        max_requests=settings.rate_limit_read_max_requests,
    )
    query = request.rel_url.query
    if not query.get("merchant_id") or not query.get("subscriber"):
        raise ApiError(
            400,
            "Missing required parameters: merchant_id, subscriber",
            "INVALID_REQUEST",
            headers=headers,
        )
    try:
        params = SubscriptionCheckQuery.model_validate(dict(query))
    except ValidationError as exc:
        field = str(exc.errors()[0]["loc"][0])
        error, code = _FIELD_ERROR_CODES.get(field, ("Invalid request", "INVALID_REQUEST"))
        raise ApiError(400, error, code, headers=headers) from exc
    if params.merchant_id != merchant.merchant_id:
        raise ApiError(
            403,
            "merchant_id does not match authenticated merchant",
            "MERCHANT_MISMATCH",
            headers=headers,
        )

    service = await get_subscription_service(request)
    result = await service.check(merchant.id, params.subscriber, params.plan_id)
    if not result.is_active or result.subscription is None:
        return web.json_response(
            {"isActive": False, "message": result.message}, headers=headers
        )

    subscription = result.subscription.public_view()
    subscription["plan"] = result.plan.public_view() if result.plan else None
    return web.json_response(
        {"isActive": True, "subscription": subscription, "count": result.count},
        headers=headers,
    )
