"""API key management (secret keys only)."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from aiohttp import web
from pydantic import BaseModel, ValidationError

from caspay_gateway.api.auth import authenticate_admin
from caspay_gateway.api.utils import ApiError, parse_uuid, read_json
from caspay_gateway.domain.enums import ApiScope
from caspay_gateway.domain.models import IssuedApiKey
from caspay_gateway.services.dependencies import get_api_key_service

routes = web.RouteTableDef()

_KNOWN_SCOPES = {scope.value for scope in ApiScope}


class ApiKeyCreateDTO(BaseModel):
    name: str | None = None
    key_type: Literal["live", "test", "secret"] = "test"
    permissions: list[str] | None = None
    expires_at: datetime | None = None
    allowed_domains: list[str] | None = None


def _issued_view(issued: IssuedApiKey) -> dict:
    return {**issued.api_key.public_view(), "key": issued.key}


@routes.get("/api/v1/api-keys")
async def list_api_keys(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="api-keys")
    service = await get_api_key_service(request)
    keys = await service.list_keys(merchant.id)
    return web.json_response({"api_keys": [k.public_view() for k in keys]}, headers=headers)


@routes.post("/api/v1/api-keys")
async def create_api_key(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="api-keys")
    body = await read_json(request)
    try:
        dto = ApiKeyCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise ApiError(400, "Invalid API key request", "INVALID_REQUEST") from exc
    if dto.permissions is not None:
        unknown = sorted(set(dto.permissions) - _KNOWN_SCOPES)
        if unknown:
            raise ApiError(400, f"Unknown permissions: {', '.join(unknown)}", "INVALID_REQUEST")

    service = await get_api_key_service(request)
    issued = await service.create_key(
        merchant.id,
        name=dto.name,
        key_type=dto.key_type,
        permissions=dto.permissions,
        expires_at=dto.expires_at,
        allowed_domains=dto.allowed_domains,
    )
    return web.json_response(_issued_view(issued), status=201, headers=headers)


@routes.post("/api/v1/api-keys/{key_id}/rotate")
async def rotate_api_key(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="api-keys")
    key_id = parse_uuid(request.match_info["key_id"], "key_id")
    service = await get_api_key_service(request)
    issued = await service.rotate_key(merchant.id, key_id)
    return web.json_response(_issued_view(issued), status=201, headers=headers)


@routes.delete("/api/v1/api-keys/{key_id}")
async def deactivate_api_key(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="api-keys")
    key_id = parse_uuid(request.match_info["key_id"], "key_id")
    service = await get_api_key_service(request)
    api_key = await service.deactivate_key(merchant.id, key_id)
    return web.json_response(api_key.public_view(), headers=headers)
