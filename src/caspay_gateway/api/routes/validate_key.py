"""API key self-check endpoint used by merchant SDKs."""
from __future__ import annotations

from aiohttp import web

from caspay_gateway.api.auth import authenticate
from caspay_gateway.domain.enums import ApiScope

routes = web.RouteTableDef()


@routes.get("/api/v1/validate-key")
async def validate_key(request: web.Request):
    merchant, headers = await authenticate(
        request, ApiScope.WRITE_PAYMENTS.value, operation="validate-key"
    )
    return web.json_response(
        {
            "success": True,
            "valid": True,
            "merchantId": merchant.merchant_id,
            "keyType": merchant.key_prefix.key_type,
            "network": merchant.network.value,
        },
        headers=headers,
    )
