from __future__ import annotations

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import jwt
import pytest
from sqlalchemy import select

from tenantlink.core.errors import (
    ConfigurationError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReplayError,
    TokenRevokedError,
    TokenUnknownError,
)
from tenantlink.domain.models import AuditEvent, CompanyProjectUser, SSOTokenUsage
from tenantlink.persistence.db import SessionLocal
from tenantlink.services.access_ledger import ensure_project_user
from tenantlink.services.sso_tokens import JWT_ALGORITHM, TokenService, append_query_params
from tenantlink.tests.utils.clock import FakeClock
from tenantlink.tests.utils.drivers import ScriptedDriver, scripted_registry
from tenantlink.tests.utils.factories import (
    SSO_SECRET,
    create_access,
    create_company,
    create_project,
    create_user,
)


async def _setup(**project_overrides):
    company = await create_company()
    user = await create_user(company_id=company.id)
    project = await create_project(**project_overrides)
    access = await create_access(
        company_id=company.id,
        project_id=project.id,
        external_company_id="ext-co-1",
    )
    return company, user, project, access


async def _mint(service: TokenService, *, access, project, user, project_user=None):
    async with SessionLocal() as session:
        minted = await service.mint(
            session, access=access, project=project, user=user, project_user=project_user
        )
        await session.commit()
    return minted


async def _consume(service: TokenService, token: str, project):
    async with SessionLocal() as session:
        return await service.consume(session, token, project, ip_address="203.0.113.7")


async def _usage_status(jti: str) -> str | None:
    async with SessionLocal() as session:
        return await session.scalar(select(SSOTokenUsage.status).where(SSOTokenUsage.jti == jti))


@pytest.mark.asyncio
async def test_minted_claims_round_trip_through_consume() -> None:
    company, user, project, access = await _setup()
    clock = FakeClock()
    service = TokenService(time_provider=clock)

    minted = await _mint(service, access=access, project=project, user=user)
    assert minted.expires_at - minted.issued_at == timedelta(seconds=3600)
    assert minted.token not in repr(minted)
    assert await _usage_status(minted.jti) == "issued"

    claims = await _consume(service, minted.token, project)
    assert claims["iss"] == "tenantlink"
    assert claims["aud"] == project.slug
    assert claims["sub"] == user.id
    assert claims["cid"] == company.id
    assert claims["pid"] == project.id
    assert claims["cpa_id"] == access.id
    assert claims["jti"] == minted.jti
    # Without a user mapping the external company id stands in for the user.
    assert claims["ext_uid"] == "ext-co-1"
    assert claims["ext_cid"] == "ext-co-1"
    assert claims["exp"] - claims["iat"] == 3600
    assert await _usage_status(minted.jti) == "used"


@pytest.mark.asyncio
async def test_mapped_external_user_id_is_carried_in_token() -> None:
    _, user, project, access = await _setup()
    service = TokenService(time_provider=FakeClock())
    async with SessionLocal() as session:
        mapping = await ensure_project_user(
            session, access=access, user_id=user.id, external_user_id="ext-user-42"
        )
        minted = await service.mint(
            session, access=access, project=project, user=user, project_user=mapping
        )
        await session.commit()
    decoded = jwt.decode(minted.token, SSO_SECRET, algorithms=[JWT_ALGORITHM], audience=project.slug)
    assert decoded["ext_uid"] == "ext-user-42"


@pytest.mark.asyncio
async def test_second_consume_is_a_replay_and_is_audited() -> None:
    _, user, project, access = await _setup()
    service = TokenService(time_provider=FakeClock())
    minted = await _mint(service, access=access, project=project, user=user)

    await _consume(service, minted.token, project)
    with pytest.raises(TokenReplayError):
        await _consume(service, minted.token, project)

    async with SessionLocal() as session:
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "sso.token.rejected"))
        ).scalars().all()
    assert len(events) == 1
    assert events[0].error_code == "SSO_TOKEN_REPLAYED"
    assert events[0].resource_id == minted.jti
    assert events[0].ip_address == "203.0.113.7"
    assert minted.token not in str(events[0].metadata_json)


@pytest.mark.asyncio
async def test_expiry_is_checked_before_replay() -> None:
    _, user, project, access = await _setup(sso_token_expiry=60)
    clock = FakeClock()
    service = TokenService(time_provider=clock)

    used = await _mint(service, access=access, project=project, user=user)
    clock.advance(10)
    await _consume(service, used.token, project)

    unused = await _mint(service, access=access, project=project, user=user)
    clock.advance(61)

    # A used token presented after expiry reports expiry, not replay.
    with pytest.raises(TokenExpiredError):
        await _consume(service, used.token, project)
    with pytest.raises(TokenExpiredError):
        await _consume(service, unused.token, project)

    assert await _usage_status(used.jti) == "used"
    assert await _usage_status(unused.jti) == "expired"


@pytest.mark.asyncio
async def test_token_is_valid_until_the_expiry_second() -> None:
    _, user, project, access = await _setup(sso_token_expiry=60)
    clock = FakeClock()
    service = TokenService(time_provider=clock)
    minted = await _mint(service, access=access, project=project, user=user)

    clock.advance(59)
    claims = await _consume(service, minted.token, project)
    assert claims["jti"] == minted.jti


@pytest.mark.asyncio
async def test_concurrent_consumers_see_exactly_one_success() -> None:
    _, user, project, access = await _setup()
    service = TokenService(time_provider=FakeClock())
    minted = await _mint(service, access=access, project=project, user=user)

    async def attempt() -> str:
        try:
            await _consume(service, minted.token, project)
        except TokenReplayError:
            return "replay"
        return "ok"

    outcomes = await asyncio.gather(*(attempt() for _ in range(5)))
    assert outcomes.count("ok") == 1
    assert outcomes.count("replay") == 4
    assert await _usage_status(minted.jti) == "used"


@pytest.mark.asyncio
async def test_tampered_and_foreign_tokens_are_invalid() -> None:
    _, user, project, access = await _setup()
    other = await create_project()
    service = TokenService(time_provider=FakeClock())
    minted = await _mint(service, access=access, project=project, user=user)

    header, payload, signature = minted.token.split(".")
    flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
    with pytest.raises(TokenInvalidError):
        await _consume(service, f"{header}.{payload}.{flipped}", project)
    # Same signing secret, but the audience names another project.
    with pytest.raises(TokenInvalidError):
        await _consume(service, minted.token, other)
    with pytest.raises(TokenInvalidError):
        await _consume(service, "not-a-jwt", project)

    assert await _usage_status(minted.jti) == "issued"


@pytest.mark.asyncio
async def test_token_without_usage_row_is_unknown() -> None:
    company, user, project, access = await _setup()
    clock = FakeClock()
    now = int(clock())
    forged = jwt.encode(
        {
            "iss": "tenantlink",
            "aud": project.slug,
            "sub": user.id,
            "exp": now + 600,
            "iat": now,
            "jti": "never-issued",
            "cid": company.id,
            "pid": project.id,
            "cpa_id": access.id,
        },
        SSO_SECRET,
        algorithm=JWT_ALGORITHM,
    )
    with pytest.raises(TokenUnknownError):
        await _consume(TokenService(time_provider=clock), forged, project)


@pytest.mark.asyncio
async def test_revoked_token_cannot_be_consumed() -> None:
    _, user, project, access = await _setup()
    service = TokenService(time_provider=FakeClock())
    minted = await _mint(service, access=access, project=project, user=user)

    async with SessionLocal() as session:
        assert await service.revoke_token(session, minted.jti) is True
        await session.commit()
    with pytest.raises(TokenRevokedError):
        await _consume(service, minted.token, project)


@pytest.mark.asyncio
async def test_build_redirect_url_mints_and_maps_user() -> None:
    _, user, project, access = await _setup(
        sso_redirect_url="https://partner.example.test/sso?lang=it",
        sso_callback_url="https://partner.example.test/back",
    )
    service = TokenService(time_provider=FakeClock())
    async with SessionLocal() as session:
        url = await service.build_redirect_url(session, access=access, project=project, user=user)
        await session.commit()

    parts = urlsplit(url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://partner.example.test/sso"
    query = parse_qs(parts.query)
    assert query["lang"] == ["it"]
    assert query["callback"] == ["https://partner.example.test/back"]
    claims = await _consume(service, query["token"][0], project)
    assert claims["sub"] == user.id

    async with SessionLocal() as session:
        mapping = await session.scalar(
            select(CompanyProjectUser).where(CompanyProjectUser.access_id == access.id)
        )
    assert mapping is not None
    assert mapping.user_id == user.id
    assert mapping.last_sso_at is not None


@pytest.mark.asyncio
async def test_redirect_without_target_leaves_no_usage_row() -> None:
    _, user, project, access = await _setup(sso_redirect_url=None)
    service = TokenService(time_provider=FakeClock())
    async with SessionLocal() as session:
        with pytest.raises(ConfigurationError):
            await service.build_redirect_url(session, access=access, project=project, user=user)
        await session.rollback()
        assert (await session.execute(select(SSOTokenUsage))).first() is None


@pytest.mark.asyncio
async def test_redirect_falls_back_to_the_driver_entry_point() -> None:
    _, user, project, access = await _setup(slug="legacy", sso_redirect_url=None)
    driver = ScriptedDriver()
    service = TokenService(time_provider=FakeClock(), registry=scripted_registry(driver))
    async with SessionLocal() as session:
        url = await service.build_redirect_url(session, access=access, project=project, user=user)
        await session.commit()

    parts = urlsplit(url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://legacy.example.test/login"
    assert "token" in parse_qs(parts.query)
    assert driver.sso_calls == 1


@pytest.mark.asyncio
async def test_configured_redirect_target_skips_the_driver() -> None:
    _, user, project, access = await _setup()
    driver = ScriptedDriver(sso_unavailable=True)
    service = TokenService(time_provider=FakeClock(), registry=scripted_registry(driver))
    async with SessionLocal() as session:
        url = await service.build_redirect_url(session, access=access, project=project, user=user)
    assert url.startswith("https://partner.example.test/sso?")
    assert driver.sso_calls == 0


@pytest.mark.asyncio
async def test_expire_stale_tokens_marks_only_lapsed_rows() -> None:
    _, user, project, access = await _setup(sso_token_expiry=60)
    clock = FakeClock()
    service = TokenService(time_provider=clock)
    stale = await _mint(service, access=access, project=project, user=user)
    clock.advance(120)
    fresh = await _mint(service, access=access, project=project, user=user)

    async with SessionLocal() as session:
        expired = await service.expire_stale_tokens(session)
        await session.commit()
    assert expired == 1
    assert await _usage_status(stale.jti) == "expired"
    assert await _usage_status(fresh.jti) == "issued"


def test_append_query_params_keeps_existing_query() -> None:
    url = append_query_params("https://p.test/sso?a=1#frag", {"token": "t"})
    assert url == "https://p.test/sso?a=1&token=t#frag"


