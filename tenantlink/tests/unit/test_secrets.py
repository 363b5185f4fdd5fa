from __future__ import annotations

import base64

import pytest

from tenantlink.services.crypto.secrets import (
    decode_key_material,
    decrypt_credentials,
    decrypt_optional,
    decrypt_secret,
    encrypt_credentials,
    encrypt_optional,
    encrypt_secret,
)


def test_encrypt_uses_fresh_nonce_per_value() -> None:
    first = encrypt_secret("same-value")
    second = encrypt_secret("same-value")
    assert first != second
    assert first.startswith("v1:")
    assert decrypt_secret(first) == decrypt_secret(second) == "same-value"


def test_tampered_blob_is_rejected() -> None:
    blob = encrypt_secret("value")
    tampered = blob[:-4] + ("AAAA" if not blob.endswith("AAAA") else "BBBB")
    with pytest.raises(ValueError):
        decrypt_secret(tampered)
    with pytest.raises(ValueError):
        decrypt_secret("not-a-blob")


def test_credential_map_round_trip_drops_empty_values() -> None:
    encrypted = encrypt_credentials({"api_key": "k", "api_secret": "s", "token": "", "other": None})
    assert set(encrypted) == {"api_key", "api_secret"}
    assert decrypt_credentials(encrypted) == {"api_key": "k", "api_secret": "s"}
    assert decrypt_credentials(None) == {}


def test_optional_helpers_pass_none_through() -> None:
    assert encrypt_optional(None) is None
    assert decrypt_optional(None) is None
    assert decrypt_optional(encrypt_optional("x")) == "x"


def test_key_material_accepts_hex_and_base64() -> None:
    assert decode_key_material("00" * 32) == bytes(32)
    assert decode_key_material(base64.b64encode(bytes(32)).decode("ascii")) == bytes(32)
    with pytest.raises(ValueError):
        decode_key_material("   ")
