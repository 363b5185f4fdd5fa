from __future__ import annotations

import base64
import binascii
import hashlib
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantlink.core.config import get_settings


# Version prefix lets stored blobs survive a future key or format rotation.
_BLOB_PREFIX = "v1:"
_NONCE_BYTES = 12


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()


@lru_cache
def _master_key() -> bytes:
    settings = get_settings()
    if settings.crypto_master_key:
        return _ensure_32_bytes(decode_key_material(settings.crypto_master_key))
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-secrets".encode("utf-8")
    return hashlib.sha256(seed).digest()


def reset_key_cache() -> None:
    _master_key.cache_clear()


def encrypt_secret(plaintext: str) -> str:
    # AES-256-GCM with a fresh nonce per value; the blob is nonce + ciphertext + tag.
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = AESGCM(_master_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    return _BLOB_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_secret(blob: str) -> str:
    if not blob.startswith(_BLOB_PREFIX):
        raise ValueError("unsupported secret blob format")
    try:
        payload = base64.b64decode(blob[len(_BLOB_PREFIX):].encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("secret blob is not valid base64") from exc
    nonce, ciphertext = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
    try:
        plaintext = AESGCM(_master_key()).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise ValueError("secret blob failed authentication") from exc
    return plaintext.decode("utf-8")


def encrypt_optional(plaintext: str | None) -> str | None:
    if plaintext is None or plaintext == "":
        return None
    return encrypt_secret(plaintext)


def decrypt_optional(blob: str | None) -> str | None:
    if not blob:
        return None
    return decrypt_secret(blob)


def encrypt_credentials(credentials: dict[str, str | None]) -> dict[str, str]:
    # Each named secret is encrypted on its own; empty values are dropped.
    return {
        name: encrypt_secret(str(value))
        for name, value in credentials.items()
        if value is not None and value != ""
    }


def decrypt_credentials(encrypted: dict[str, str] | None) -> dict[str, str]:
    if not encrypted:
        return {}
    return {name: decrypt_secret(blob) for name, blob in encrypted.items()}
