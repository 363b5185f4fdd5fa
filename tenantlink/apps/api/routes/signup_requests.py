from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.apps.api.deps import Principal, get_current_user, get_db, require_super_admin
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
from tenantlink.domain.models import Company, SignupRequest, User
from tenantlink.persistence.repos import projects as projects_repo
from tenantlink.persistence.repos import signup_requests as signup_repo
from tenantlink.services.audit import get_request_context, record_event
from tenantlink.services.provisioning import ApprovalOrchestrator, public_contact
from tenantlink.services.provisioning_queue import SignupApprovalJobPayload, enqueue_signup_approval


router = APIRouter(prefix="/signup-requests", tags=["signup-requests"], responses=DEFAULT_ERROR_RESPONSES)

SIGNUP_STATUSES = ("pending", "approved", "partial_approved", "rejected")


class CompanyPayload(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    vat: str | None = Field(default=None, max_length=64)
    address: str | None = Field(default=None, max_length=1024)


class ContactPayload(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320)
    phone: str | None = Field(default=None, max_length=64)


class SignupRequestCreate(BaseModel):
    company: CompanyPayload
    contact_person: ContactPayload
    requested_projects: list[str] = Field(min_length=1)


class SignupApproveRequest(BaseModel):
    # Defaults to every project on the request.
    selected_projects: list[str] | None = None
    run_async: bool = False


class SignupRejectRequest(BaseModel):
    rejection_reason: str | None = Field(default=None, max_length=2048)


class SignupRequestResponse(BaseModel):
    id: str
    company_id: str
    status: str
    requested_projects: list[str]
    company_data: dict[str, Any]
    contact_person: dict[str, Any]
    reviewed_by: str | None
    reviewed_at: str | None
    rejection_reason: str | None
    api_calls_log: dict[str, Any] | None
    created_at: str | None


class SignupApprovalResponse(BaseModel):
    signup_request_id: str
    status: str
    queued: bool = False
    job_id: str | None = None
    result: dict[str, Any] | None = None


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Signup request not found"})


def _serialize(signup_request: SignupRequest) -> dict[str, Any]:
    return SignupRequestResponse(
        id=signup_request.id,
        company_id=signup_request.company_id,
        status=signup_request.status,
        requested_projects=list(signup_request.requested_projects or []),
        company_data=dict(signup_request.company_data or {}),
        contact_person=public_contact(signup_request.contact_person),
        reviewed_by=signup_request.reviewed_by,
        reviewed_at=signup_request.reviewed_at.isoformat() if signup_request.reviewed_at else None,
        rejection_reason=signup_request.rejection_reason,
        api_calls_log=signup_request.api_calls_log,
        created_at=signup_request.created_at.isoformat() if signup_request.created_at else None,
    ).model_dump()


@router.post("", status_code=201, response_model=SuccessEnvelope[SignupRequestResponse])
async def create_signup_request(
    payload: SignupRequestCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Public registration: the company and its admin stay pending until a super admin reviews.
    requested = list(dict.fromkeys(payload.requested_projects))
    projects = await projects_repo.get_projects_by_ids(db, requested)
    unknown = [project_id for project_id in requested if project_id not in projects or not projects[project_id].is_active]
    if unknown:
        raise HTTPException(
            status_code=422,
            detail={"code": "UNKNOWN_PROJECTS", "message": "Requested projects are not available", "project_ids": unknown},
        )
    if payload.company.vat:
        existing = await db.execute(select(Company.id).where(Company.vat == payload.company.vat))
        if existing.scalar_one_or_none() is not None:
            raise HTTPException(
                status_code=409,
                detail={"code": "COMPANY_EXISTS", "message": "A company with this VAT number is already registered"},
            )

    company = Company(
        id=uuid4().hex,
        name=payload.company.name,
        vat=payload.company.vat,
        address=payload.company.address,
        status="pending",
    )
    db.add(company)
    await db.flush()
    contact = payload.contact_person.model_dump()
    db.add(
        User(
            id=uuid4().hex,
            company_id=company.id,
            name=payload.contact_person.name,
            email=payload.contact_person.email,
            role="company_admin",
            status="pending",
        )
    )
    signup_request = SignupRequest(
        id=uuid4().hex,
        company_id=company.id,
        requested_projects=requested,
        company_data=payload.company.model_dump(),
        contact_person=contact,
        status="pending",
    )
    db.add(signup_request)
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        company_id=company.id,
        actor_type="anonymous",
        actor_id=None,
        event_type="signup_request.created",
        outcome="success",
        resource_type="signup_request",
        resource_id=signup_request.id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"requested_projects": requested},
    )
    await db.commit()
    await db.refresh(signup_request)
    return success_response(request=request, data=_serialize(signup_request))


@router.get("", response_model=PageEnvelope[SignupRequestResponse])
async def list_signup_requests(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if status is not None and status not in SIGNUP_STATUSES:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_STATUS", "message": f"status must be one of {', '.join(SIGNUP_STATUSES)}"},
        )
    rows = await signup_repo.list_signup_requests(db, status=status, offset=offset, limit=limit)
    return page_response(request=request, items=[_serialize(row) for row in rows], limit=limit, offset=offset)


@router.get("/{signup_request_id}", response_model=SuccessEnvelope[SignupRequestResponse])
async def get_signup_request(
    signup_request_id: str,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    signup_request = await signup_repo.get_signup_request(db, signup_request_id)
    if signup_request is None:
        raise _not_found()
    return success_response(request=request, data=_serialize(signup_request))


@router.post("/{signup_request_id}/approve", response_model=SuccessEnvelope[SignupApprovalResponse])
async def approve_signup_request(
    signup_request_id: str,
    payload: SignupApproveRequest,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    approver: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.run_async:
        signup_request = await signup_repo.get_signup_request(db, signup_request_id)
        if signup_request is None:
            raise _not_found()
        if signup_request.status != "pending":
            raise domain_http_exception(
                InvalidTransitionError(f"signup request {signup_request.id} is {signup_request.status}, not pending")
            )
        job_id = await enqueue_signup_approval(
            SignupApprovalJobPayload(
                signup_request_id=signup_request_id,
                approver_id=approver.id,
                selected_projects=payload.selected_projects,
                request_id=get_request_id(request),
            )
        )
        # Inline mode may already have completed the approval.
        await db.refresh(signup_request)
        data = SignupApprovalResponse(
            signup_request_id=signup_request_id,
            status=signup_request.status,
            queued=True,
            job_id=job_id,
        )
        return success_response(request=request, data=data.model_dump())

    signup_request = await signup_repo.get_signup_request(db, signup_request_id, for_update=True)
    if signup_request is None:
        raise _not_found()
    try:
        result = await ApprovalOrchestrator().approve(
            db,
            signup_request=signup_request,
            approver=approver,
            selected_project_ids=payload.selected_projects,
            request_id=get_request_id(request),
        )
    except InvalidTransitionError as exc:
        raise domain_http_exception(exc) from exc
    data = SignupApprovalResponse(
        signup_request_id=signup_request.id,
        status=signup_request.status,
        result=result.to_log(),
    )
    return success_response(request=request, data=data.model_dump())


@router.post("/{signup_request_id}/reject", response_model=SuccessEnvelope[SignupRequestResponse])
async def reject_signup_request(
    signup_request_id: str,
    payload: SignupRejectRequest,
    request: Request,
    principal: Principal = Depends(require_super_admin),
    approver: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    signup_request = await signup_repo.get_signup_request(db, signup_request_id, for_update=True)
    if signup_request is None:
        raise _not_found()
    try:
        await ApprovalOrchestrator().reject(
            db,
            signup_request=signup_request,
            approver=approver,
            reason=payload.rejection_reason,
            request_id=get_request_id(request),
        )
    except InvalidTransitionError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=_serialize(signup_request))
