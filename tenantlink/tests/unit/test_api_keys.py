from __future__ import annotations

import argparse

import pytest
from sqlalchemy import select

from tenantlink.domain.models import ApiKey, AuditEvent, User
from tenantlink.persistence.db import SessionLocal
from tenantlink.services.auth.api_keys import (
    generate_api_key,
    hash_api_key,
    key_id_from_raw,
    normalize_role,
    verify_api_key,
)
from tenantlink.tests.utils.factories import create_company
from scripts.create_api_key import _create_key


def test_generated_key_embeds_id_and_hashes_deterministically() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key(key_id="abc123")
    assert key_id == "abc123"
    assert raw_key.startswith("tlk_abc123_")
    assert key_prefix == raw_key[:12]
    assert key_hash == hash_api_key(raw_key)
    assert key_hash != raw_key
    assert generate_api_key()[1] != generate_api_key()[1]


def test_key_id_is_recovered_only_from_platform_keys() -> None:
    generated = generate_api_key()
    assert key_id_from_raw(generated.raw_key) == generated.key_id
    assert verify_api_key(generated.raw_key, generated.key_hash)
    assert not verify_api_key(generated.raw_key + "x", generated.key_hash)
    assert key_id_from_raw("not-a-key") is None
    assert key_id_from_raw("tlk_short_secretsecretsecretsecret") is None
    assert key_id_from_raw(f"other_{generated.key_id}_{'s' * 30}") is None


def test_normalize_role() -> None:
    assert normalize_role(" Company_Admin ") == "company_admin"
    with pytest.raises(ValueError):
        normalize_role("owner")


@pytest.mark.asyncio
async def test_create_api_key_script_creates_user_key_and_audit_event() -> None:
    company = await create_company()
    args = argparse.Namespace(
        role="company_admin",
        name="ops-key",
        company=company.id,
        user_id=None,
        user_name="Ops",
        email="ops@example.test",
    )
    assert await _create_key(args) == 0

    async with SessionLocal() as session:
        user = await session.scalar(select(User).where(User.email == "ops@example.test"))
        key = await session.scalar(select(ApiKey).where(ApiKey.user_id == user.id))
        event = await session.scalar(
            select(AuditEvent).where(AuditEvent.event_type == "auth.api_key.created")
        )
    assert user.company_id == company.id
    assert user.role == "company_admin"
    assert key.name == "ops-key"
    assert event.resource_id == key.id
    assert event.metadata_json["key_prefix"] == key.key_prefix


@pytest.mark.asyncio
async def test_create_api_key_script_requires_company_for_scoped_roles() -> None:
    args = argparse.Namespace(
        role="user", name="k", company=None, user_id=None, user_name="u", email=None
    )
    with pytest.raises(ValueError):
        await _create_key(args)
