"""Payment recording and lookup endpoints (public merchant keys)."""
from __future__ import annotations

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from caspay_gateway.api.auth import authenticate
from caspay_gateway.api.utils import ApiError, read_json
from caspay_gateway.core.exceptions import PlanNotFoundError, TransactionClaimedError
from caspay_gateway.domain.enums import ApiScope
from caspay_gateway.services.dependencies import get_reconciler
from caspay_gateway.settings import settings

routes = web.RouteTableDef()


class PaymentRecordDTO(BaseModel):
    merchant_id: str = Field(pattern=r"^MERCH_")
    transaction_hash: str = Field(min_length=10, max_length=128)
    amount: float = Field(gt=0)
    sender_address: str = Field(min_length=1)
    product_id: str | None = Field(default=None, min_length=1)
    subscription_plan_id: str | None = Field(default=None, pattern=r"^plan_")
    currency: str = "CSPR"

    @field_validator("amount")
    @classmethod
    def amount_within_cap(cls, value: float) -> float:
        if value > settings.payment_max_amount:
            raise ValueError("Amount exceeds maximum allowed value")
        return value

    @model_validator(mode="after")
    def product_or_plan(self) -> "PaymentRecordDTO":
        if not self.product_id and not self.subscription_plan_id:
            raise ValueError("Either product_id or subscription_plan_id is required")
        return self


@routes.post("/api/v1/payments/record")
async def record_payment(request: web.Request):
    merchant, headers = await authenticate(
        request, ApiScope.WRITE_PAYMENTS.value, operation="payment-record"
    )
    body = await read_json(request)
    try:
        dto = PaymentRecordDTO.model_validate(body)
    except ValidationError as exc:
        raise ApiError(
            400,
            "; ".join(str(err["msg"]) for err in exc.errors()),
            "INVALID_REQUEST",
            headers=headers,
        ) from exc
    if dto.merchant_id != merchant.merchant_id:
        raise ApiError(
            403,
            "merchant_id does not match authenticated merchant",
            "MERCHANT_MISMATCH",
            headers=headers,
        )

    reconciler = await get_reconciler(request)
    try:
        recorded = await reconciler.record_payment(
            merchant,
            transaction_hash=dto.transaction_hash,
            amount=dto.amount,
            sender_address=dto.sender_address,
            product_id=dto.product_id,
            subscription_plan_id=dto.subscription_plan_id,
            currency=dto.currency,
        )
    except PlanNotFoundError as exc:
        raise ApiError(
            404, "Subscription plan not found", "PLAN_NOT_FOUND", headers=headers
        ) from exc
    except TransactionClaimedError as exc:
        raise ApiError(
            409,
            "This transaction has already been processed.",
            "DUPLICATE_TRANSACTION",
            headers=headers,
        ) from exc
    if recorded.payment is None:
        verification = recorded.verification
        raise ApiError(
            400,
            (verification.error if verification else None) or "Transaction verification failed",
            "VERIFICATION_FAILED",
            headers=headers,
        )

    if recorded.duplicate:
        return web.json_response(
            {
                "success": True,
                "message": "Payment already recorded",
                "payment": recorded.payment.public_view(),
                "duplicate": True,
            },
            headers=headers,
        )

    verification = recorded.verification
    assert verification is not None
    payload = {
        "success": True,
        "payment": recorded.payment.public_view(),
        "verification": {
            "verified": True,
            "transaction_hash": verification.deploy_hash,
            "amount": verification.amount,
        },
    }
    if recorded.subscription is not None:
        payload["subscription"] = recorded.subscription.public_view()
    return web.json_response(payload, headers=headers)


@routes.get("/api/v1/payments/by-hash/{transaction_hash}")
async def get_payment_by_hash(request: web.Request):
    merchant, headers = await authenticate(
        request,
        ApiScope.READ_PAYMENTS.value,
        operation="payment-lookup",
        max_requests=settings.rate_limit_read_max_requests,
    )
    reconciler = await get_reconciler(request)
    payment = await reconciler.find_payment(merchant.id, request.match_info["transaction_hash"])
    if payment is None:
        raise ApiError(404, "Payment not found", "NOT_FOUND", headers=headers)
    return web.json_response({"success": True, "payment": payment.public_view()}, headers=headers)
