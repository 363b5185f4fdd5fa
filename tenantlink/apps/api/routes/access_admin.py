from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.apps.api.deps import Principal, get_db, require_super_admin
from tenantlink.apps.api.errors import domain_http_exception
from tenantlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantlink.apps.api.response import (
    PageEnvelope,
    SuccessEnvelope,
    get_request_id,
    page_response,
    success_response,
)
from tenantlink.core.errors import InvalidTransitionError
from tenantlink.domain.models import Company, CompanyProjectAccess, Project
from tenantlink.persistence.repos import access as access_repo
from tenantlink.persistence.repos import projects as projects_repo
from tenantlink.services import access_admin
from tenantlink.services.access_ledger import serialize_access
from tenantlink.services.retry_scheduler import RetryScheduler


router = APIRouter(
    prefix="/admin/companies/{company_id}/access",
    tags=["access-admin"],
    responses=DEFAULT_ERROR_RESPONSES,
)

AccessStatus = Literal["pending", "active", "partial_failed", "suspended", "revoked"]


class AccessGrantRequest(BaseModel):
    project_id: str
    status: Literal["pending", "active"] = "active"
    rate_limit_per_minute: int | None = Field(default=None, ge=1)
    rate_limit_per_hour: int | None = Field(default=None, ge=1)


class AccessStatusUpdate(BaseModel):
    status: AccessStatus


class AccessResponse(BaseModel):
    id: str
    company_id: str
    project_id: str
    status: str
    external_company_id: str | None
    credential_names: list[str]
    retry_count: int
    auto_retry: bool
    last_error: str | None
    rate_limit_per_minute: int
    rate_limit_per_hour: int
    circuit_breaker_state: str
    circuit_breaker_failures: int
    circuit_breaker_reset_at: str | None
    approved_at: str | None
    approved_by: str | None
    last_sync_at: str | None


class ManualRetryResponse(BaseModel):
    access: AccessResponse
    succeeded: bool
    error: str | None


async def _load_company(db: AsyncSession, company_id: str) -> Company:
    company = await db.get(Company, company_id)
    if company is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Company not found"})
    return company


async def _load_project(db: AsyncSession, project_id: str) -> Project:
    project = await projects_repo.get_project(db, project_id)
    if project is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Project not found"})
    return project


async def _load_access(db: AsyncSession, company_id: str, project_id: str) -> CompanyProjectAccess:
    access = await access_repo.get_access_for_update(db, company_id=company_id, project_id=project_id)
    if access is None:
        raise HTTPException(
            status_code=404, detail={"code": "NOT_FOUND", "message": "Access entry not found"}
        )
    return access


@router.get("", response_model=PageEnvelope[AccessResponse])
async def list_company_access(
    company_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _load_company(db, company_id)
    entries = await access_repo.list_access(db, company_id=company_id, offset=offset, limit=limit)
    return page_response(
        request=request, items=[serialize_access(entry) for entry in entries], limit=limit, offset=offset
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[AccessResponse])
async def grant_company_access(
    company_id: str,
    payload: AccessGrantRequest,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _load_company(db, company_id)
    project = await _load_project(db, payload.project_id)
    try:
        access = await access_admin.grant_access(
            db,
            company_id=company_id,
            project=project,
            actor_id=principal.user_id,
            status=payload.status,
            rate_limit_per_minute=payload.rate_limit_per_minute,
            rate_limit_per_hour=payload.rate_limit_per_hour,
            request_id=get_request_id(request),
        )
    except InvalidTransitionError as exc:
        await db.rollback()
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=serialize_access(access))


@router.patch("/{project_id}", response_model=SuccessEnvelope[AccessResponse])
async def update_company_access(
    company_id: str,
    project_id: str,
    payload: AccessStatusUpdate,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await _load_project(db, project_id)
    access = await _load_access(db, company_id, project_id)
    try:
        access = await access_admin.update_access_status(
            db,
            access=access,
            project=project,
            status=payload.status,
            actor_id=principal.user_id,
            request_id=get_request_id(request),
        )
    except InvalidTransitionError as exc:
        await db.rollback()
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=serialize_access(access))


@router.delete("/{project_id}", response_model=SuccessEnvelope[AccessResponse])
async def revoke_company_access(
    company_id: str,
    project_id: str,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await _load_project(db, project_id)
    access = await _load_access(db, company_id, project_id)
    try:
        access = await access_admin.revoke_access(
            db,
            access=access,
            project=project,
            actor_id=principal.user_id,
            request_id=get_request_id(request),
        )
    except InvalidTransitionError as exc:
        await db.rollback()
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=serialize_access(access))


@router.post("/{project_id}/retry", response_model=SuccessEnvelope[ManualRetryResponse])
async def retry_company_access(
    company_id: str,
    project_id: str,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    access = await _load_access(db, company_id, project_id)
    try:
        result = await RetryScheduler().manual_retry(
            db,
            access,
            actor_id=principal.user_id,
            request_id=get_request_id(request),
        )
    except InvalidTransitionError as exc:
        await db.rollback()
        raise domain_http_exception(exc) from exc
    data: dict[str, Any] = {
        "access": serialize_access(access),
        "succeeded": result.succeeded,
        "error": result.error,
    }
    return success_response(request=request, data=data)
