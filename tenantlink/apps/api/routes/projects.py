from __future__ import annotations

from typing import Any, Literal
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.apps.api.deps import Principal, get_current_principal, get_db, require_super_admin
from tenantlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantlink.apps.api.response import (
    PageEnvelope,
    SuccessEnvelope,
    get_request_id,
    page_response,
    success_response,
)
from tenantlink.domain.models import Project
from tenantlink.persistence.repos import access as access_repo
from tenantlink.persistence.repos import projects as projects_repo
from tenantlink.providers.drivers.registry import get_driver_registry
from tenantlink.services.audit import record_event
from tenantlink.services.crypto.secrets import encrypt_optional


router = APIRouter(prefix="/projects", tags=["projects"], responses=DEFAULT_ERROR_RESPONSES)

IntegrationType = Literal["api", "iframe", "hybrid"]
AuthType = Literal["bearer", "basic", "oauth2", "custom"]
# Fields holding secrets; accepted on write, encrypted at rest, never echoed back.
_SECRET_FIELDS = ("api_key", "api_secret")


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=128, pattern=r"^[a-z0-9][a-z0-9-]*$")
    description: str | None = None
    integration_type: IntegrationType = "api"
    api_base_url: str | None = None
    api_auth_type: AuthType = "bearer"
    api_key: str | None = None
    api_secret: str | None = None
    api_signup_endpoint: str | None = None
    admin_panel_url: str | None = None
    iframe_width: str = "100%"
    iframe_height: str = "100vh"
    iframe_sandbox: str | None = None
    sso_enabled: bool = True
    sso_token_expiry: int = Field(default=3600, ge=60)
    sso_redirect_url: str | None = None
    sso_callback_url: str | None = None
    driver_key: str | None = None
    is_active: bool = True


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    integration_type: IntegrationType | None = None
    api_base_url: str | None = None
    api_auth_type: AuthType | None = None
    api_key: str | None = None
    api_secret: str | None = None
    api_signup_endpoint: str | None = None
    admin_panel_url: str | None = None
    iframe_width: str | None = None
    iframe_height: str | None = None
    iframe_sandbox: str | None = None
    sso_enabled: bool | None = None
    sso_token_expiry: int | None = Field(default=None, ge=60)
    sso_redirect_url: str | None = None
    sso_callback_url: str | None = None
    driver_key: str | None = None
    is_active: bool | None = None


class ProjectResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: str | None
    integration_type: str
    api_base_url: str | None
    api_auth_type: str
    has_api_key: bool
    has_api_secret: bool
    api_signup_endpoint: str | None
    admin_panel_url: str | None
    iframe_width: str
    iframe_height: str
    iframe_sandbox: str | None
    sso_enabled: bool
    sso_token_expiry: int
    sso_redirect_url: str | None
    sso_callback_url: str | None
    driver_key: str | None
    is_active: bool


class ConnectionTestResponse(BaseModel):
    project_id: str
    driver: str
    reachable: bool


def serialize_project(project: Project) -> dict[str, Any]:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        slug=project.slug,
        description=project.description,
        integration_type=project.integration_type,
        api_base_url=project.api_base_url,
        api_auth_type=project.api_auth_type,
        has_api_key=bool(project.api_key),
        has_api_secret=bool(project.api_secret),
        api_signup_endpoint=project.api_signup_endpoint,
        admin_panel_url=project.admin_panel_url,
        iframe_width=project.iframe_width,
        iframe_height=project.iframe_height,
        iframe_sandbox=project.iframe_sandbox,
        sso_enabled=project.sso_enabled,
        sso_token_expiry=project.sso_token_expiry,
        sso_redirect_url=project.sso_redirect_url,
        sso_callback_url=project.sso_callback_url,
        driver_key=project.driver_key,
        is_active=project.is_active,
    ).model_dump()


def project_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Project not found"})


async def load_visible_project(db: AsyncSession, principal: Principal, project_id: str) -> Project:
    # Non super admins only see active projects their company holds active access to.
    project = await projects_repo.get_project(db, project_id)
    if project is None:
        raise project_not_found()
    if principal.is_super_admin:
        return project
    if not project.is_active or not principal.company_id:
        raise project_not_found()
    access = await access_repo.get_access(db, company_id=principal.company_id, project_id=project.id)
    if access is None or access.status != "active":
        raise project_not_found()
    return project


async def _audit_project(
    db: AsyncSession,
    request: Request,
    principal: Principal,
    *,
    event_type: str,
    project: Project,
    changed: list[str],
) -> None:
    await record_event(
        session=db,
        company_id=None,
        actor_type="user",
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome="success",
        resource_type="project",
        resource_id=project.id,
        request_id=get_request_id(request),
        metadata={"slug": project.slug, "fields": changed},
    )


@router.get("", response_model=PageEnvelope[ProjectResponse])
async def list_projects(
    request: Request,
    is_active: bool | None = Query(default=None),
    search: str | None = Query(default=None, max_length=128),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if principal.is_super_admin:
        projects = await projects_repo.list_projects(
            db, is_active=is_active, search=search, offset=offset, limit=limit
        )
    elif principal.company_id:
        projects = await projects_repo.list_projects_for_company(
            db, company_id=principal.company_id, offset=offset, limit=limit
        )
    else:
        projects = []
    return page_response(
        request=request,
        items=[serialize_project(project) for project in projects],
        limit=limit,
        offset=offset,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[ProjectResponse])
async def create_project(
    payload: ProjectCreate,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    existing = await db.execute(select(Project.id).where(Project.slug == payload.slug))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "PROJECT_SLUG_EXISTS", "message": "A project with this slug already exists"},
        )
    values = payload.model_dump()
    for field_name in _SECRET_FIELDS:
        values[field_name] = encrypt_optional(values[field_name])
    project = Project(id=uuid4().hex, **values)
    db.add(project)
    await db.flush()
    await _audit_project(
        db,
        request,
        principal,
        event_type="project.created",
        project=project,
        changed=sorted(payload.model_fields_set),
    )
    await db.commit()
    await db.refresh(project)
    return success_response(request=request, data=serialize_project(project))


@router.get("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def get_project(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await load_visible_project(db, principal, project_id)
    return success_response(request=request, data=serialize_project(project))


@router.patch("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def update_project(
    project_id: str,
    payload: ProjectUpdate,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await projects_repo.get_project(db, project_id)
    if project is None:
        raise project_not_found()
    changes = payload.model_dump(exclude_unset=True)
    for field_name, value in changes.items():
        if field_name in _SECRET_FIELDS:
            value = encrypt_optional(value)
        setattr(project, field_name, value)
    await _audit_project(
        db,
        request,
        principal,
        event_type="project.updated",
        project=project,
        changed=sorted(changes),
    )
    await db.commit()
    await db.refresh(project)
    return success_response(request=request, data=serialize_project(project))


@router.post("/{project_id}/test-connection", response_model=SuccessEnvelope[ConnectionTestResponse])
async def check_project_connection(
    project_id: str,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await projects_repo.get_project(db, project_id)
    if project is None:
        raise project_not_found()
    driver = get_driver_registry().resolve(project)
    reachable = await driver.test_connection(project)
    data = ConnectionTestResponse(project_id=project.id, driver=driver.name, reachable=reachable)
    return success_response(request=request, data=data.model_dump())


@router.delete("/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def delete_project(
    project_id: str,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await projects_repo.get_project(db, project_id)
    if project is None:
        raise project_not_found()
    access_rows = await projects_repo.count_access_rows(db, project.id)
    if access_rows:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "PROJECT_IN_USE",
                "message": "Project is still referenced by company access records",
                "access_count": access_rows,
            },
        )
    # The row stays so historical integration logs keep their project reference.
    project.is_active = False
    await _audit_project(
        db,
        request,
        principal,
        event_type="project.deleted",
        project=project,
        changed=["is_active"],
    )
    await db.commit()
    await db.refresh(project)
    return success_response(request=request, data=serialize_project(project))
