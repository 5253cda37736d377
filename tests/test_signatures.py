from __future__ import annotations

import hashlib
import hmac

from caspay_gateway.services.signatures import generate_webhook_secret, sign, verify
from caspay_gateway.webhooks_dispatcher import encode_payload

SECRET = "whsec_0123456789abcdefghijklmnopqrstuv"


def test_sign_is_hex_hmac_sha256():
    body = b'{"event":"payment.received"}'
    expected = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    assert sign(body, SECRET) == expected


def test_verify_accepts_own_signature():
    body = encode_payload({"event": "payment.received", "data": {"amount": 12.5, "note": "café"}})
    assert verify(body, sign(body, SECRET), SECRET)


def test_verify_rejects_single_byte_change():
    body = encode_payload({"event": "payment.received", "data": {"amount": 12.5}})
    signature = sign(body, SECRET)
    tampered = body.replace(b"12.5", b"12.6")
    assert tampered != body
    assert not verify(tampered, signature, SECRET)


def test_verify_rejects_wrong_secret_or_empty_signature():
    body = b"{}"
    assert not verify(body, sign(body, SECRET), SECRET + "x")
    assert not verify(body, "", SECRET)


def test_verify_tolerates_uppercase_signature():
    body = b'{"a":1}'
    assert verify(body, sign(body, SECRET).upper(), SECRET)


def test_encode_payload_is_compact():
    assert encode_payload({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'


def test_generate_webhook_secret():
    secret = generate_webhook_secret()
    assert secret.startswith("whsec_")
    assert len(secret) == len("whsec_") + 32
    assert secret != generate_webhook_secret()
