from __future__ import annotations

import re

import pytest

from caspay_gateway.core.exceptions import InvalidApiKeyFormatError
from caspay_gateway.domain.enums import KeyPrefix
from caspay_gateway.services.credentials import (
    generate_api_key,
    generate_key_hint,
    hash_secret,
    key_prefix_of,
)


def test_hash_is_deterministic():
    key = "cp_test_abcdefghijklmnopqrstuvwx"
    assert hash_secret(key) == hash_secret(key)
    assert re.fullmatch(r"[0-9a-f]{64}", hash_secret(key))


def test_hash_differs_for_different_secrets():
    assert hash_secret("cp_test_aaaaaaaaaaaaaaaaaaaaaaaa") != hash_secret(
        "cp_test_aaaaaaaaaaaaaaaaaaaaaaab"
    )


@pytest.mark.parametrize(
    "key_type,prefix",
    [("live", "cp_live_"), ("test", "cp_test_"), ("secret", "cp_secret_")],
)
def test_generate_api_key_shape(key_type, prefix):
    key = generate_api_key(key_type)
    assert key.startswith(prefix)
    assert re.fullmatch(r"[a-z0-9]{24}", key[len(prefix):])


def test_generate_api_key_rejects_unknown_type():
    with pytest.raises(InvalidApiKeyFormatError):
        generate_api_key("staging")


def test_generated_keys_are_unique():
    assert len({generate_api_key("test") for _ in range(50)}) == 50


def test_key_prefix_of():
    assert key_prefix_of("cp_secret_abc") is KeyPrefix.SECRET
    assert key_prefix_of("cp_live_abc") is KeyPrefix.LIVE
    assert key_prefix_of("sk_live_abc") is None
    assert key_prefix_of("") is None
    assert key_prefix_of(None) is None


def test_key_hint_keeps_last_four_characters():
    hint = generate_key_hint("cp_live_abcdefghijklmnopqrstwxyz")
    assert hint == "cp_live_" + "*" * 20 + "wxyz"


def test_key_hint_rejects_unknown_prefix():
    with pytest.raises(InvalidApiKeyFormatError):
        generate_key_hint("pk_abcdef")
