from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import NamedTuple
from uuid import uuid4


ROLES = ("super_admin", "company_admin", "user")
KEY_PREFIX = "tlk"
# tlk_<32 hex key id>_<urlsafe secret>
_RAW_KEY_RE = re.compile(rf"^{KEY_PREFIX}_(?P<key_id>[0-9a-f]{{32}})_(?P<secret>[A-Za-z0-9_-]{{20,}})$")


class GeneratedApiKey(NamedTuple):
    key_id: str
    raw_key: str
    key_prefix: str
    key_hash: str


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_id_from_raw(raw_key: str) -> str | None:
    """Return the key id embedded in a platform key, or None if it is not one."""
    match = _RAW_KEY_RE.match(raw_key)
    return match.group("key_id") if match else None


def verify_api_key(raw_key: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_api_key(raw_key), stored_hash)


def generate_api_key(*, key_id: str | None = None) -> GeneratedApiKey:
    # Only the hash is stored; the prefix lets operators recognise a key in listings.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{KEY_PREFIX}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return GeneratedApiKey(
        key_id=resolved_id,
        raw_key=raw_key,
        key_prefix=raw_key[:12],
        key_hash=hash_api_key(raw_key),
    )
