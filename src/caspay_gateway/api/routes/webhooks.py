"""Webhook endpoint management (secret keys only)."""
from __future__ import annotations

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from caspay_gateway.api.auth import authenticate_admin
from caspay_gateway.api.utils import (
    ApiError,
    paginated_response,
    pagination_params,
    parse_uuid,
    read_json,
)
from caspay_gateway.domain.models import WebhookEndpoint
from caspay_gateway.services.dependencies import get_webhook_service

routes = web.RouteTableDef()


class WebhookCreateDTO(BaseModel):
    url: str = Field(pattern=r"^https?://")
    description: str | None = None
    events: list[str] = Field(default_factory=lambda: ["*"])


class WebhookUpdateDTO(BaseModel):
    url: str | None = Field(default=None, pattern=r"^https?://")
    description: str | None = None
    events: list[str] | None = None
    active: bool | None = None


def _normalize_events(events: list[str]) -> list[str]:
    cleaned = [e.strip() for e in events if e and e.strip()]
    cleaned = list(dict.fromkeys(cleaned))
    if not cleaned:
        raise ApiError(400, "events must be a non-empty list", "INVALID_REQUEST")
    return cleaned


def _endpoint_view(endpoint: WebhookEndpoint, *, reveal_secret: bool = False) -> dict:
    payload = endpoint.model_dump(mode="json")
    if not reveal_secret:
        payload["secret"] = f"{endpoint.secret[:10]}..."
    return payload


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    service = await get_webhook_service(request)
    endpoints = await service.list_endpoints(merchant.id)
    return web.json_response(
        {"webhooks": [_endpoint_view(ep) for ep in endpoints]}, headers=headers
    )


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    body = await read_json(request)
    try:
        dto = WebhookCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise ApiError(400, "url must be an http(s) URL", "INVALID_REQUEST") from exc

    service = await get_webhook_service(request)
    endpoint = await service.create_endpoint(
        merchant.id,
        url=dto.url,
        events=_normalize_events(dto.events),
        description=dto.description,
    )
    return web.json_response(
        _endpoint_view(endpoint, reveal_secret=True), status=201, headers=headers
    )


@routes.get("/api/v1/webhooks/deliveries")
async def list_recent_deliveries(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    service = await get_webhook_service(request)
    limit, offset = pagination_params(request)
    items, total = await service.list_recent_deliveries(merchant.id, limit=limit, offset=offset)
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload, headers=headers)


@routes.post("/api/v1/webhooks/deliveries/{delivery_id}/retry")
async def retry_delivery(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    service = await get_webhook_service(request)
    delivery = await service.retry_delivery(merchant.id, delivery_id)
    return web.json_response(delivery.model_dump(mode="json"), headers=headers)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    endpoint = await service.get_endpoint(merchant.id, webhook_id)
    return web.json_response(_endpoint_view(endpoint), headers=headers)


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    body = await read_json(request)
    try:
        dto = WebhookUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise ApiError(400, "Invalid webhook update", "INVALID_REQUEST") from exc
    updates = dto.model_dump(exclude_unset=True)
    if "events" in updates:
        updates["events"] = _normalize_events(updates["events"] or [])
    service = await get_webhook_service(request)
    endpoint = await service.update_endpoint(merchant.id, webhook_id, updates)
    return web.json_response(_endpoint_view(endpoint), headers=headers)


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    await service.delete_endpoint(merchant.id, webhook_id)
    return web.Response(status=204, headers=headers)


@routes.post("/api/v1/webhooks/{webhook_id}/toggle")
async def toggle_webhook(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    endpoint = await service.toggle_endpoint(merchant.id, webhook_id)
    return web.json_response(_endpoint_view(endpoint), headers=headers)


@routes.post("/api/v1/webhooks/{webhook_id}/secret")
async def regenerate_secret(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    endpoint = await service.regenerate_secret(merchant.id, webhook_id)
    return web.json_response(_endpoint_view(endpoint, reveal_secret=True), headers=headers)


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def test_webhook(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    delivery = await service.send_test_event(
        merchant.id, webhook_id, public_merchant_id=merchant.merchant_id
    )
    return web.json_response(
        {
            "success": delivery.succeeded,
            "status_code": delivery.response_status,
            "delivery": delivery.model_dump(mode="json"),
        },
        headers=headers,
    )


@routes.get("/api/v1/webhooks/{webhook_id}/deliveries")
async def list_endpoint_deliveries(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="webhooks")
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = await get_webhook_service(request)
    limit, offset = pagination_params(request)
    items, total = await service.list_deliveries(
        merchant.id, webhook_id, limit=limit, offset=offset
    )
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload, headers=headers)
