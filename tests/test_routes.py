"""HTTP surface tests: routes wired to fake repositories."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from aiohttp import web

from caspay_gateway import tasks
from caspay_gateway.api.router import setup_routes
from caspay_gateway.domain.enums import PaymentStatus
from caspay_gateway.middleware.errors import error_middleware
from caspay_gateway.services.api_keys import ApiKeyService
from caspay_gateway.services.dependencies import RATE_LIMITER_KEY
from caspay_gateway.services.rate_limit import InMemoryRateLimitStore, RateLimiter
from caspay_gateway.services.reconciliation import PaymentReconciler
from caspay_gateway.services.transactions import TransactionVerifier, to_motes
from caspay_gateway.services.webhooks import WebhookDispatcher, WebhookService
from caspay_gateway.settings import settings
from tests.fakes import FakeRpcClient, RecordingDispatcher, make_api_key, transfer_deploy

TEST_KEY = "cp_test_abcdefghijklmnopqrstuvwx"
SECRET_KEY = "cp_secret_abcdefghijklmnopqrstuvwx"
DEPLOY = "d" * 64
SENDER = "01" + "cd" * 32


@pytest.fixture
def rpc():
    return FakeRpcClient({DEPLOY: transfer_deploy(amount_motes=to_motes(10))})


@pytest.fixture
def reconciler(payment_repo, merchant_repo, rpc, subscription_service):
    verifier = TransactionVerifier(payment_repo, lambda network: rpc)
    return PaymentReconciler(
        payment_repo,
        merchant_repo,
        verifier,
        RecordingDispatcher(),
        subscriptions=subscription_service,
    )


@pytest.fixture
def webhook_service(endpoint_repo, delivery_repo):
    dispatcher = WebhookDispatcher(endpoint_repo, delivery_repo, session=AsyncMock())
    return WebhookService(endpoint_repo, delivery_repo, dispatcher)


@pytest.fixture
async def client(
    aiohttp_client,
    validator,
    key_repo,
    testnet_merchant,
    reconciler,
    webhook_service,
    subscription_service,
):
    key_repo.add(
        make_api_key(
            testnet_merchant,
            TEST_KEY,
            permissions=["write:payments", "read:payments", "read:subscriptions"],
        )
    )
    key_repo.add(make_api_key(testnet_merchant, SECRET_KEY, permissions=["admin", "read", "write"]))

    app = web.Application(middlewares=[error_middleware])
    app[RATE_LIMITER_KEY] = RateLimiter(InMemoryRateLimitStore())
    setup_routes(app)

    with patch(
        "caspay_gateway.api.auth.get_api_key_validator", AsyncMock(return_value=validator)
    ), patch(
        "caspay_gateway.api.routes.payments.get_reconciler", AsyncMock(return_value=reconciler)
    ), patch(
        "caspay_gateway.api.routes.reconciliation.get_reconciler",
        AsyncMock(return_value=reconciler),
    ), patch(
        "caspay_gateway.api.routes.subscriptions.get_subscription_service",
        AsyncMock(return_value=subscription_service),
    ), patch(
        "caspay_gateway.api.routes.webhooks.get_webhook_service",
        AsyncMock(return_value=webhook_service),
    ), patch(
        "caspay_gateway.api.routes.api_keys.get_api_key_service",
        AsyncMock(return_value=ApiKeyService(key_repo)),
    ):
        yield await aiohttp_client(app)
    await tasks.drain()


def record_body(**overrides):
    body = {
        "merchant_id": "MERCH_TEST01",
        "transaction_hash": DEPLOY,
        "amount": 10,
        "sender_address": SENDER,
        "product_id": "prod_1",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_validate_key_requires_header(client):
    resp = await client.get("/api/v1/validate-key")
    assert resp.status == 401
    assert await resp.json() == {"error": "API key is required", "code": "INVALID_KEY"}


@pytest.mark.asyncio
async def test_validate_key_success(client):
    resp = await client.get("/api/v1/validate-key", headers={"X-CasPay-Key": TEST_KEY})
    assert resp.status == 200
    assert await resp.json() == {
        "success": True,
        "valid": True,
        "merchantId": "MERCH_TEST01",
        "keyType": "test",
        "network": "testnet",
    }
    assert resp.headers["X-RateLimit-Limit"] == "60"
    assert resp.headers["X-RateLimit-Remaining"] == "59"
    assert resp.headers["X-RateLimit-Reset"].endswith("Z")


@pytest.mark.asyncio
async def test_validate_key_checks_origin_for_live_keys(client, key_repo, mainnet_merchant):
    live_key = "cp_live_abcdefghijklmnopqrstuvwx"
    key_repo.add(make_api_key(mainnet_merchant, live_key, allowed_domains=["*.shop.io"]))

    allowed = await client.get(
        "/api/v1/validate-key",
        headers={"X-CasPay-Key": live_key, "Origin": "https://pay.shop.io"},
    )
    assert allowed.status == 200
    assert (await allowed.json())["merchantId"] == "MERCH_LIVE01"

    denied = await client.get(
        "/api/v1/validate-key",
        headers={"X-CasPay-Key": live_key, "Origin": "https://elsewhere.io"},
    )
    assert denied.status == 403
    assert (await denied.json())["code"] == "DOMAIN_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_rate_limit_exceeded(client, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_max_requests", 2)
    headers = {"X-CasPay-Key": TEST_KEY}
    for _ in range(2):
        assert (await client.get("/api/v1/validate-key", headers=headers)).status == 200

    resp = await client.get("/api/v1/validate-key", headers=headers)
    assert resp.status == 429
    payload = await resp.json()
    assert payload["code"] == "RATE_LIMIT_EXCEEDED"
    assert payload["retry_after"] > 0
    assert resp.headers["Retry-After"] == str(payload["retry_after"])
    assert resp.headers["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_record_payment(client, payment_repo):
    resp = await client.post(
        "/api/v1/payments/record", json=record_body(), headers={"X-CasPay-Key": TEST_KEY}
    )
    assert resp.status == 200
    payload = await resp.json()
    assert payload["success"] is True
    assert payload["payment"]["transaction_hash"] == DEPLOY
    assert payload["payment"]["status"] == "confirmed"
    assert payload["verification"] == {
        "verified": True,
        "transaction_hash": DEPLOY,
        "amount": to_motes(10),
    }
    (stored,) = payment_repo.payments.values()
    assert stored.status is PaymentStatus.CONFIRMED

    again = await client.post(
        "/api/v1/payments/record", json=record_body(), headers={"X-CasPay-Key": TEST_KEY}
    )
    assert again.status == 200
    assert (await again.json())["duplicate"] is True


@pytest.mark.asyncio
async def test_record_payment_merchant_mismatch(client):
    resp = await client.post(
        "/api/v1/payments/record",
        json=record_body(merchant_id="MERCH_OTHER"),
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 403
    assert (await resp.json())["code"] == "MERCHANT_MISMATCH"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"amount": 0}, {"amount": 10_000_000}, {"transaction_hash": "short"}, {"merchant_id": "X"}],
)
async def test_record_payment_rejects_bad_body(client, overrides):
    resp = await client.post(
        "/api/v1/payments/record",
        json=record_body(**overrides),
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 400
    assert (await resp.json())["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_record_payment_verification_failed(client):
    resp = await client.post(
        "/api/v1/payments/record",
        json=record_body(amount=50),
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 400
    payload = await resp.json()
    assert payload["code"] == "VERIFICATION_FAILED"
    assert payload["error"].startswith("Amount mismatch")


@pytest.mark.asyncio
async def test_payment_by_hash(client, payment_repo, testnet_merchant):
    payment_repo.add_pending(testnet_merchant, transaction_hash=DEPLOY)
    headers = {"X-CasPay-Key": TEST_KEY}

    found = await client.get(f"/api/v1/payments/by-hash/{DEPLOY}", headers=headers)
    assert found.status == 200
    assert (await found.json())["payment"]["status"] == "pending"
    assert found.headers["X-RateLimit-Limit"] == "100"

    missing = await client.get("/api/v1/payments/by-hash/unknown_hash", headers=headers)
    assert missing.status == 404
    assert (await missing.json())["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_record_payment_rejects_foreign_transaction(client, payment_repo, mainnet_merchant):
    payment_repo.add_pending(mainnet_merchant, amount=10, transaction_hash=DEPLOY)

    resp = await client.post(
        "/api/v1/payments/record", json=record_body(), headers={"X-CasPay-Key": TEST_KEY}
    )

    assert resp.status == 409
    payload = await resp.json()
    assert payload == {
        "error": "This transaction has already been processed.",
        "code": "DUPLICATE_TRANSACTION",
    }
    assert "X-RateLimit-Limit" in resp.headers


@pytest.mark.asyncio
async def test_record_payment_requires_product_or_plan(client):
    resp = await client.post(
        "/api/v1/payments/record",
        json=record_body(product_id=None),
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 400
    payload = await resp.json()
    assert payload["code"] == "INVALID_REQUEST"
    assert "Either product_id or subscription_plan_id is required" in payload["error"]


@pytest.mark.asyncio
async def test_record_payment_unknown_plan(client):
    resp = await client.post(
        "/api/v1/payments/record",
        json=record_body(product_id=None, subscription_plan_id="plan_missing"),
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 404
    assert (await resp.json())["code"] == "PLAN_NOT_FOUND"


@pytest.mark.asyncio
async def test_subscription_payment_then_check(client, plan_repo, testnet_merchant):
    plan_repo.add(testnet_merchant, "plan_pro", price=10)
    headers = {"X-CasPay-Key": TEST_KEY}

    recorded = await client.post(
        "/api/v1/payments/record",
        json=record_body(product_id=None, subscription_plan_id="plan_pro"),
        headers=headers,
    )
    assert recorded.status == 200
    subscription = (await recorded.json())["subscription"]
    assert subscription["status"] == "active"

    check = await client.get(
        "/api/v1/subscriptions/check",
        params={"merchant_id": "MERCH_TEST01", "subscriber": SENDER, "plan_id": "plan_pro"},
        headers=headers,
    )
    assert check.status == 200
    assert check.headers["X-RateLimit-Limit"] == "100"
    payload = await check.json()
    assert payload["isActive"] is True
    assert payload["count"] == 1
    assert payload["subscription"]["id"] == subscription["id"]
    assert payload["subscription"]["plan"] == {
        "plan_id": "plan_pro",
        "name": "Pro",
        "price": 10.0,
        "currency": "CSPR",
        "interval": "monthly",
    }


@pytest.mark.asyncio
async def test_subscription_check_without_subscription(client):
    resp = await client.get(
        "/api/v1/subscriptions/check",
        params={"merchant_id": "MERCH_TEST01", "subscriber": SENDER},
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 200
    assert await resp.json() == {"isActive": False, "message": "No active subscriptions found"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params,code",
    [
        ({"merchant_id": "MERCH_TEST01"}, "INVALID_REQUEST"),
        ({"merchant_id": "TEST01", "subscriber": SENDER}, "INVALID_MERCHANT_ID"),
        ({"merchant_id": "MERCH_TEST01", "subscriber": "short"}, "INVALID_SUBSCRIBER"),
        (
            {"merchant_id": "MERCH_TEST01", "subscriber": SENDER, "plan_id": "pro"},
            "INVALID_PLAN_ID",
        ),
    ],
)
async def test_subscription_check_rejects_bad_params(client, params, code):
    resp = await client.get(
        "/api/v1/subscriptions/check", params=params, headers={"X-CasPay-Key": TEST_KEY}
    )
    assert resp.status == 400
    assert (await resp.json())["code"] == code


@pytest.mark.asyncio
async def test_subscription_check_merchant_mismatch(client):
    resp = await client.get(
        "/api/v1/subscriptions/check",
        params={"merchant_id": "MERCH_OTHER", "subscriber": SENDER},
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 403
    assert (await resp.json())["code"] == "MERCHANT_MISMATCH"


@pytest.mark.asyncio
async def test_reconcile_requires_secret_key(client):
    resp = await client.post(
        f"/api/v1/payments/{uuid4()}/reconcile",
        json={"deploy_hash": DEPLOY},
        headers={"X-CasPay-Key": TEST_KEY},
    )
    assert resp.status == 401
    assert (await resp.json())["error"] == "Invalid API key format"


@pytest.mark.asyncio
async def test_reconcile_payment(client, payment_repo, testnet_merchant):
    payment = payment_repo.add_pending(testnet_merchant, amount=10)
    headers = {"X-CasPay-Key": SECRET_KEY}

    resp = await client.post(
        f"/api/v1/payments/{payment.id}/reconcile", json={"deploy_hash": DEPLOY}, headers=headers
    )
    assert resp.status == 200
    assert (await resp.json())["outcome"] == "confirmed"

    again = await client.post(
        f"/api/v1/payments/{payment.id}/reconcile", json={"deploy_hash": DEPLOY}, headers=headers
    )
    assert again.status == 200
    assert (await again.json())["outcome"] == "already_processed"


@pytest.mark.asyncio
async def test_reconcile_foreign_or_missing_payment(client):
    resp = await client.post(
        f"/api/v1/payments/{uuid4()}/reconcile",
        json={"deploy_hash": DEPLOY},
        headers={"X-CasPay-Key": SECRET_KEY},
    )
    assert resp.status == 404


@pytest.mark.asyncio
async def test_verify_payments_sweep(client, payment_repo, testnet_merchant):
    payment_repo.add_pending(testnet_merchant, amount=10, transaction_hash=DEPLOY)
    resp = await client.post("/api/v1/verify-payments", headers={"X-CasPay-Key": SECRET_KEY})
    assert resp.status == 200
    assert (await resp.json())["summary"]["confirmed"] == 1


@pytest.mark.asyncio
async def test_webhook_crud(client):
    headers = {"X-CasPay-Key": SECRET_KEY}
    created = await client.post(
        "/api/v1/webhooks",
        json={"url": "https://example.com/hook", "events": ["payment.*", " ", "payment.*"]},
        headers=headers,
    )
    assert created.status == 201
    endpoint = await created.json()
    assert endpoint["secret"].startswith("whsec_") and len(endpoint["secret"]) == 38
    assert endpoint["events"] == ["payment.*"]

    listed = await client.get("/api/v1/webhooks", headers=headers)
    (masked,) = (await listed.json())["webhooks"]
    assert masked["secret"] == endpoint["secret"][:10] + "..."

    patched = await client.patch(
        f"/api/v1/webhooks/{endpoint['id']}", json={"active": False}, headers=headers
    )
    assert (await patched.json())["active"] is False

    deleted = await client.delete(f"/api/v1/webhooks/{endpoint['id']}", headers=headers)
    assert deleted.status == 204
    gone = await client.get(f"/api/v1/webhooks/{endpoint['id']}", headers=headers)
    assert gone.status == 404


@pytest.mark.asyncio
async def test_webhook_create_rejects_bad_url(client):
    resp = await client.post(
        "/api/v1/webhooks", json={"url": "ftp://example.com"}, headers={"X-CasPay-Key": SECRET_KEY}
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_webhook_routes_reject_public_keys(client):
    resp = await client.get("/api/v1/webhooks", headers={"X-CasPay-Key": TEST_KEY})
    assert resp.status == 401


@pytest.mark.asyncio
async def test_api_key_issue_and_list(client):
    headers = {"X-CasPay-Key": SECRET_KEY}
    created = await client.post(
        "/api/v1/api-keys", json={"name": "checkout", "key_type": "test"}, headers=headers
    )
    assert created.status == 201
    issued = await created.json()
    assert issued["key"].startswith("cp_test_")
    assert "key_hash" not in issued

    validated = await client.get("/api/v1/validate-key", headers={"X-CasPay-Key": issued["key"]})
    assert validated.status == 200

    listed = await client.get("/api/v1/api-keys", headers=headers)
    keys = (await listed.json())["api_keys"]
    assert len(keys) == 3
    assert all("key" not in k and "key_hash" not in k for k in keys)


@pytest.mark.asyncio
async def test_api_key_unknown_permission(client):
    resp = await client.post(
        "/api/v1/api-keys",
        json={"key_type": "live", "permissions": ["write:everything"]},
        headers={"X-CasPay-Key": SECRET_KEY},
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "Unknown permissions: write:everything"


@pytest.mark.asyncio
async def test_api_key_rotate_and_deactivate(client, key_repo):
    headers = {"X-CasPay-Key": SECRET_KEY}
    created = await (
        await client.post("/api/v1/api-keys", json={"key_type": "test"}, headers=headers)
    ).json()

    rotated = await client.post(f"/api/v1/api-keys/{created['id']}/rotate", headers=headers)
    assert rotated.status == 201
    new_key = await rotated.json()
    assert new_key["key"] != created["key"]

    deactivated = await client.delete(f"/api/v1/api-keys/{new_key['id']}", headers=headers)
    assert (await deactivated.json())["active"] is False

    bad_id = await client.delete("/api/v1/api-keys/not-a-uuid", headers=headers)
    assert bad_id.status == 400
