from __future__ import annotations

import pytest

from tenantlink.domain.models import CompanyProjectAccess
from tenantlink.persistence.guards import TenantPredicateError, company_predicate, require_company_id
from tenantlink.persistence.repos import access as access_repo
from tenantlink.persistence.repos import projects as projects_repo
from tenantlink.persistence.repos import signup_requests as signup_repo


def test_require_company_id_rejects_empty_scope() -> None:
    for value in (None, ""):
        with pytest.raises(TenantPredicateError):
            require_company_id(value)
    require_company_id("c1")


def test_company_predicate_builds_a_company_filter() -> None:
    clause = company_predicate(CompanyProjectAccess, "c1")
    assert "company_project_access.company_id" in str(clause)


@pytest.mark.asyncio
async def test_access_repo_requires_company_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await access_repo.list_access(None, company_id=None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await access_repo.get_access(None, company_id="", project_id="p1")  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await access_repo.get_access_for_update(None, company_id=None, project_id="p1")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_company_scoped_lookups_require_company_predicate() -> None:
    with pytest.raises(TenantPredicateError):
        await projects_repo.list_projects_for_company(None, company_id=None)  # type: ignore[arg-type]
    with pytest.raises(TenantPredicateError):
        await signup_repo.get_company_admin(None, company_id="")  # type: ignore[arg-type]
