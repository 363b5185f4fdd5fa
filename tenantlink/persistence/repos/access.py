from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.domain.models import CompanyProjectAccess, CompanyProjectUser
from tenantlink.persistence.db import supports_row_locks
from tenantlink.persistence.guards import company_predicate, require_company_id


async def get_access(
    session: AsyncSession,
    *,
    company_id: str,
    project_id: str,
) -> CompanyProjectAccess | None:
    # Ledger entries are always addressed by the (company, project) pair.
    result = await session.execute(
        select(CompanyProjectAccess).where(
            company_predicate(CompanyProjectAccess, company_id),
            CompanyProjectAccess.project_id == project_id,
        )
    )
    return result.scalar_one_or_none()


async def get_access_for_update(
    session: AsyncSession,
    *,
    company_id: str,
    project_id: str,
) -> CompanyProjectAccess | None:
    # Lock the row so admission counters and breaker fields are read-modify-written serially.
    stmt = select(CompanyProjectAccess).where(
        company_predicate(CompanyProjectAccess, company_id),
        CompanyProjectAccess.project_id == project_id,
    )
    if supports_row_locks():
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_access_by_id(session: AsyncSession, access_id: str) -> CompanyProjectAccess | None:
    return await session.get(CompanyProjectAccess, access_id)


async def claim_retryable_access(
    session: AsyncSession,
    *,
    access_id: str,
    max_retries: int,
) -> CompanyProjectAccess | None:
    # Claim one failed entry; concurrent sweeps skip rows another worker already holds.
    stmt = select(CompanyProjectAccess).where(
        CompanyProjectAccess.id == access_id,
        CompanyProjectAccess.status == "partial_failed",
        CompanyProjectAccess.retry_count < max_retries,
        CompanyProjectAccess.auto_retry.is_(True),
    )
    if supports_row_locks():
        stmt = stmt.with_for_update(skip_locked=True)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def list_access(
    session: AsyncSession,
    *,
    company_id: str,
    offset: int = 0,
    limit: int | None = None,
) -> list[CompanyProjectAccess]:
    require_company_id(company_id)
    stmt = (
        select(CompanyProjectAccess)
        .where(company_predicate(CompanyProjectAccess, company_id))
        .order_by(CompanyProjectAccess.created_at.asc(), CompanyProjectAccess.id.asc())
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_retryable_access_ids(
    session: AsyncSession,
    *,
    max_retries: int,
    company_id: str | None = None,
    signup_request_id: str | None = None,
) -> list[str]:
    # Return ids only so each entry can be re-read under its own transaction.
    stmt = select(CompanyProjectAccess.id).where(
        CompanyProjectAccess.status == "partial_failed",
        CompanyProjectAccess.retry_count < max_retries,
        CompanyProjectAccess.auto_retry.is_(True),
    )
    if company_id is not None:
        stmt = stmt.where(company_predicate(CompanyProjectAccess, company_id))
    if signup_request_id is not None:
        stmt = stmt.where(CompanyProjectAccess.signup_request_id == signup_request_id)
    result = await session.execute(stmt.order_by(CompanyProjectAccess.updated_at.asc()))
    return [row for row in result.scalars().all()]


async def get_project_user(
    session: AsyncSession,
    *,
    access_id: str,
    user_id: str,
) -> CompanyProjectUser | None:
    result = await session.execute(
        select(CompanyProjectUser).where(
            CompanyProjectUser.access_id == access_id,
            CompanyProjectUser.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_project_users(session: AsyncSession, *, access_id: str) -> list[CompanyProjectUser]:
    result = await session.execute(
        select(CompanyProjectUser).where(CompanyProjectUser.access_id == access_id)
    )
    return list(result.scalars().all())
