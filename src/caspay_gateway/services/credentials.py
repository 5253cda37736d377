"""API key generation and hashing.

Every key class (live, test and secret) is stored as the SHA-256 hex digest of
its full plaintext. The digest is unsalted so a presented key is resolved with
a single equality lookup on ``api_keys.key_hash``.
"""
from __future__ import annotations

import hashlib
import secrets
import string

from caspay_gateway.core.exceptions import InvalidApiKeyFormatError
from caspay_gateway.domain.enums import KeyPrefix

KEY_SECRET_LENGTH = 24
KEY_ALPHABET = string.ascii_lowercase + string.digits
_HINT_VISIBLE_CHARS = 4


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_api_key(key_type: str) -> str:
    """Return ``{prefix}{24 chars of [a-z0-9]}`` for ``live``, ``test`` or ``secret``."""
    prefix = _prefix_for_type(key_type)
    body = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_SECRET_LENGTH))
    return f"{prefix.value}{body}"


def key_prefix_of(raw_key: str | None) -> KeyPrefix | None:
    if not raw_key:
        return None
    for prefix in KeyPrefix:
        if raw_key.startswith(prefix.value):
            return prefix
    return None


def generate_key_hint(raw_key: str) -> str:
    """Mask everything but the last four characters of the key body."""
    prefix = key_prefix_of(raw_key)
    if prefix is None:
        raise InvalidApiKeyFormatError("Invalid API key format")
    body = raw_key[len(prefix.value):]
    visible = body[-_HINT_VISIBLE_CHARS:]
    masked = "*" * max(0, len(body) - _HINT_VISIBLE_CHARS)
    return f"{prefix.value}{masked}{visible}"


def _prefix_for_type(key_type: str) -> KeyPrefix:
    for prefix in KeyPrefix:
        if prefix.key_type == key_type:
            return prefix
    raise InvalidApiKeyFormatError(f"Unknown key type: {key_type}")
