"""HMAC-SHA256 webhook signatures."""
from __future__ import annotations

import hashlib
import hmac
import secrets
import string

WEBHOOK_SECRET_PREFIX = "whsec_"
_SECRET_ALPHABET = string.ascii_letters + string.digits
_SECRET_LENGTH = 32


def sign(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload``; sign the exact bytes that go on the wire."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(payload: bytes, signature: str, secret: str) -> bool:
    if not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def generate_webhook_secret() -> str:
    body = "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(_SECRET_LENGTH))
    return f"{WEBHOOK_SECRET_PREFIX}{body}"
