"""Operator-triggered reconciliation (secret keys only)."""
from __future__ import annotations

from datetime import datetime, timezone

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from caspay_gateway.api.auth import authenticate_admin
from caspay_gateway.api.utils import ApiError, parse_uuid, read_json
from caspay_gateway.domain.enums import ReconciliationOutcome
from caspay_gateway.services.dependencies import get_reconciler
from caspay_gateway.settings import settings

routes = web.RouteTableDef()

_OUTCOME_STATUS = {
    ReconciliationOutcome.CONFIRMED: 200,
    ReconciliationOutcome.ALREADY_PROCESSED: 200,
    ReconciliationOutcome.NOT_PENDING: 409,
    ReconciliationOutcome.INVALID: 422,
    ReconciliationOutcome.NOT_FOUND: 404,
}


class ReconcileDTO(BaseModel):
    deploy_hash: str = Field(min_length=10, max_length=128)


@routes.post("/api/v1/payments/{payment_id}/reconcile")
async def reconcile_payment(request: web.Request):
    merchant, headers = await authenticate_admin(request, operation="payment-reconcile")
    payment_id = parse_uuid(request.match_info["payment_id"], "payment_id")
    body = await read_json(request)
    try:
        dto = ReconcileDTO.model_validate(body)
    except ValidationError as exc:
        raise ApiError(400, "deploy_hash is required", "INVALID_REQUEST", headers=headers) from exc

    reconciler = await get_reconciler(request)
    # the payment must belong to the caller; foreign rows look missing
    if await reconciler.find_payment_by_id(merchant.id, payment_id) is None:
        raise ApiError(404, "Payment not found", "NOT_FOUND", headers=headers)
    result = await reconciler.reconcile(payment_id, dto.deploy_hash)
    return web.json_response(
        result.model_dump(mode="json"),
        status=_OUTCOME_STATUS[result.outcome],
        headers=headers,
    )


@routes.post("/api/v1/verify-payments")
async def verify_payments(request: web.Request):
    _, headers = await authenticate_admin(request, operation="verify-payments")
    reconciler = await get_reconciler(request)
    summary = await reconciler.sweep(
        datetime.now(timezone.utc), limit=settings.reconcile_batch_size
    )
    return web.json_response({"success": True, "summary": summary}, headers=headers)
