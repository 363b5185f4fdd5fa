from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.domain.models import CompanyProjectAccess, Project
from tenantlink.persistence.repos import access as access_repo
from tenantlink.providers.drivers.registry import DriverRegistry, get_driver_registry
from tenantlink.services.access_ledger import get_or_create_access, transition_status
from tenantlink.services.audit import record_event
from tenantlink.services.sso_tokens import TokenService


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def grant_access(
    session: AsyncSession,
    *,
    company_id: str,
    project: Project,
    actor_id: str,
    status: str = "active",
    rate_limit_per_minute: int | None = None,
    rate_limit_per_hour: int | None = None,
    request_id: str | None = None,
) -> CompanyProjectAccess:
    # Create-or-update: an existing entry keeps its credentials and external ids.
    access, created = await get_or_create_access(
        session,
        company_id=company_id,
        project_id=project.id,
        rate_limit_per_minute=rate_limit_per_minute,
        rate_limit_per_hour=rate_limit_per_hour,
    )
    if not created:
        if rate_limit_per_minute is not None:
            access.rate_limit_per_minute = rate_limit_per_minute
        if rate_limit_per_hour is not None:
            access.rate_limit_per_hour = rate_limit_per_hour
    previous = access.status
    transition_status(access, status)
    if status == "active" and previous != "active":
        access.approved_at = _utc_now()
        access.approved_by = actor_id
        access.last_error = None
        access.retry_count = 0
    await record_event(
        session=session,
        company_id=company_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="access.granted",
        outcome="success",
        resource_type="company_project_access",
        resource_id=access.id,
        request_id=request_id,
        metadata={"project_id": project.id, "status": status, "created": created},
    )
    await session.commit()
    logger.info(
        "access_granted company_id=%s project_id=%s status=%s created=%s",
        company_id,
        project.id,
        status,
        created,
    )
    return access


async def update_access_status(
    session: AsyncSession,
    *,
    access: CompanyProjectAccess,
    project: Project,
    status: str,
    actor_id: str,
    request_id: str | None = None,
    registry: DriverRegistry | None = None,
) -> CompanyProjectAccess:
    if status == "revoked":
        return await revoke_access(
            session,
            access=access,
            project=project,
            actor_id=actor_id,
            request_id=request_id,
            registry=registry,
        )
    previous = access.status
    transition_status(access, status)
    await record_event(
        session=session,
        company_id=access.company_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="access.status_updated",
        outcome="success",
        resource_type="company_project_access",
        resource_id=access.id,
        request_id=request_id,
        metadata={"project_id": project.id, "from": previous, "to": status},
    )
    await session.commit()
    return access


async def revoke_access(
    session: AsyncSession,
    *,
    access: CompanyProjectAccess,
    project: Project,
    actor_id: str,
    request_id: str | None = None,
    registry: DriverRegistry | None = None,
    token_service: TokenService | None = None,
) -> CompanyProjectAccess:
    """Revoke a ledger entry locally even when the external project cannot be reached.

    Outstanding SSO tokens and user mappings are revoked in the same transaction,
    so no token minted before revocation can still be consumed.
    """
    transition_status(access, "revoked")
    driver = (registry or get_driver_registry()).resolve(project)
    try:
        external_revoked = await driver.revoke(project, access)
    except Exception as exc:  # noqa: BLE001 - local revocation must not depend on the partner
        logger.warning(
            "access_external_revoke_failed access_id=%s project_id=%s", access.id, project.id, exc_info=exc
        )
        external_revoked = False

    revoked_tokens = await (token_service or TokenService()).revoke_tokens_for_access(session, access.id)
    now = _utc_now()
    for mapping in await access_repo.list_project_users(session, access_id=access.id):
        if mapping.status != "revoked":
            mapping.status = "revoked"
            mapping.revoked_at = now
    await record_event(
        session=session,
        company_id=access.company_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="access.revoked",
        outcome="success",
        resource_type="company_project_access",
        resource_id=access.id,
        request_id=request_id,
        metadata={
            "project_id": project.id,
            "external_revoked": external_revoked,
            "revoked_sso_count": revoked_tokens,
        },
    )
    await session.commit()
    logger.info(
        "access_revoked access_id=%s project_id=%s external_revoked=%s",
        access.id,
        project.id,
        external_revoked,
    )
    return access
