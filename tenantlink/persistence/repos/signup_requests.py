from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.domain.models import SignupRequest, User
from tenantlink.persistence.db import supports_row_locks
from tenantlink.persistence.guards import company_predicate


async def get_signup_request(
    session: AsyncSession,
    signup_request_id: str,
    *,
    for_update: bool = False,
) -> SignupRequest | None:
    # Lock on approval so two reviewers cannot process the same request concurrently.
    stmt = select(SignupRequest).where(SignupRequest.id == signup_request_id)
    if for_update and supports_row_locks():
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_signup_requests(
    session: AsyncSession,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[SignupRequest]:
    stmt = select(SignupRequest)
    if status:
        stmt = stmt.where(SignupRequest.status == status)
    stmt = stmt.order_by(SignupRequest.created_at.desc(), SignupRequest.id.desc())
    result = await session.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())


async def get_company_admin(session: AsyncSession, *, company_id: str) -> User | None:
    # The signup contact becomes the company's first company_admin user.
    result = await session.execute(
        select(User)
        .where(company_predicate(User, company_id), User.role == "company_admin")
        .order_by(User.created_at.asc(), User.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()
