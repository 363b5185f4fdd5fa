from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.domain.models import CompanyProjectAccess, Project
from tenantlink.persistence.guards import company_predicate


async def get_project(session: AsyncSession, project_id: str) -> Project | None:
    return await session.get(Project, project_id)


async def get_project_by_slug(session: AsyncSession, slug: str) -> Project | None:
    result = await session.execute(select(Project).where(Project.slug == slug))
    return result.scalar_one_or_none()


async def get_projects_by_ids(session: AsyncSession, project_ids: list[str]) -> dict[str, Project]:
    # Keyed by id so callers can walk their own ordering and spot unknown ids.
    if not project_ids:
        return {}
    result = await session.execute(select(Project).where(Project.id.in_(project_ids)))
    return {project.id: project for project in result.scalars().all()}


async def list_projects(
    session: AsyncSession,
    *,
    is_active: bool | None = None,
    search: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Project]:
    # Platform-wide listing used by super admins only.
    stmt = select(Project)
    if is_active is not None:
        stmt = stmt.where(Project.is_active.is_(is_active))
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(
                Project.name.ilike(pattern),
                Project.slug.ilike(pattern),
                Project.description.ilike(pattern),
            )
        )
    stmt = stmt.order_by(Project.name.asc(), Project.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_projects_for_company(
    session: AsyncSession,
    *,
    company_id: str,
    offset: int = 0,
    limit: int = 50,
) -> list[Project]:
    # Tenants only see active projects they hold active access to.
    stmt = (
        select(Project)
        .join(CompanyProjectAccess, CompanyProjectAccess.project_id == Project.id)
        .where(
            company_predicate(CompanyProjectAccess, company_id),
            CompanyProjectAccess.status == "active",
            Project.is_active.is_(True),
        )
        .order_by(Project.name.asc(), Project.id.asc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_access_rows(session: AsyncSession, project_id: str) -> int:
    # Revoked and rejected rows count too; they still anchor tokens and integration logs.
    result = await session.execute(
        select(func.count(CompanyProjectAccess.id)).where(CompanyProjectAccess.project_id == project_id)
    )
    return int(result.scalar_one())
