from __future__ import annotations

import pytest
from sqlalchemy import select

from tenantlink.core.errors import InvalidTransitionError, TokenRevokedError
from tenantlink.domain.models import AuditEvent, CompanyProjectUser, SSOTokenUsage
from tenantlink.persistence.db import SessionLocal
from tenantlink.persistence.repos import access as access_repo
from tenantlink.services.access_admin import grant_access, revoke_access, update_access_status
from tenantlink.services.access_ledger import ensure_project_user
from tenantlink.services.sso_tokens import TokenService
from tenantlink.tests.utils.clock import FakeClock
from tenantlink.tests.utils.drivers import ScriptedDriver, scripted_registry
from tenantlink.tests.utils.factories import (
    create_access,
    create_company,
    create_project,
    create_user,
)


async def _load(company_id: str, project_id: str):
    async with SessionLocal() as session:
        return await access_repo.get_access(session, company_id=company_id, project_id=project_id)


@pytest.mark.asyncio
async def test_grant_creates_then_updates_the_same_entry() -> None:
    company = await create_company()
    project = await create_project()
    admin = await create_user(company_id=None, role="super_admin")

    async with SessionLocal() as session:
        created = await grant_access(
            session, company_id=company.id, project=project, actor_id=admin.id, status="pending"
        )
    async with SessionLocal() as session:
        updated = await grant_access(
            session,
            company_id=company.id,
            project=project,
            actor_id=admin.id,
            rate_limit_per_minute=5,
        )

    assert updated.id == created.id
    stored = await _load(company.id, project.id)
    assert stored.status == "active"
    assert stored.approved_by == admin.id
    assert stored.rate_limit_per_minute == 5
    assert stored.rate_limit_per_hour == 1000


@pytest.mark.asyncio
async def test_illegal_status_change_is_rejected() -> None:
    company = await create_company()
    project = await create_project()
    await create_access(company_id=company.id, project_id=project.id, status="active")

    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=project.id)
        with pytest.raises(InvalidTransitionError):
            await update_access_status(
                session, access=entry, project=project, status="pending", actor_id="admin"
            )
        await session.rollback()
    assert (await _load(company.id, project.id)).status == "active"


@pytest.mark.asyncio
async def test_revoke_invalidates_outstanding_tokens_and_mappings() -> None:
    company = await create_company()
    user = await create_user(company_id=company.id)
    project = await create_project()
    access = await create_access(company_id=company.id, project_id=project.id)
    service = TokenService(time_provider=FakeClock())

    async with SessionLocal() as session:
        await ensure_project_user(session, access=access, user_id=user.id, external_user_id="ext-7")
        first = await service.mint(session, access=access, project=project, user=user)
        second = await service.mint(session, access=access, project=project, user=user)
        await session.commit()
    async with SessionLocal() as session:
        await service.consume(session, second.token, project)

    driver = ScriptedDriver()
    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=project.id)
        await revoke_access(
            session,
            access=entry,
            project=project,
            actor_id="admin",
            registry=scripted_registry(driver),
            token_service=service,
        )

    assert driver.revoke_calls == [project.slug]
    assert (await _load(company.id, project.id)).status == "revoked"
    async with SessionLocal() as session:
        statuses = dict((await session.execute(select(SSOTokenUsage.jti, SSOTokenUsage.status))).all())
        mapping = await session.scalar(select(CompanyProjectUser))
    assert statuses == {first.jti: "revoked", second.jti: "used"}
    assert mapping.status == "revoked"
    assert mapping.revoked_at is not None

    with pytest.raises(TokenRevokedError):
        async with SessionLocal() as session:
            await service.consume(session, first.token, project)


@pytest.mark.asyncio
async def test_revoke_succeeds_locally_when_partner_revoke_fails() -> None:
    company = await create_company()
    project = await create_project()
    await create_access(company_id=company.id, project_id=project.id, status="suspended")

    async with SessionLocal() as session:
        entry = await access_repo.get_access(session, company_id=company.id, project_id=project.id)
        await update_access_status(
            session,
            access=entry,
            project=project,
            status="revoked",
            actor_id="admin",
            registry=scripted_registry(ScriptedDriver(revoke_raises=True)),
        )

    assert (await _load(company.id, project.id)).status == "revoked"
    async with SessionLocal() as session:
        event = await session.scalar(select(AuditEvent).where(AuditEvent.event_type == "access.revoked"))
    assert event.metadata_json["external_revoked"] is False
    assert event.metadata_json["revoked_sso_count"] == 0
