from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.apps.api.deps import Principal, get_current_principal, get_current_user, get_db
from tenantlink.apps.api.errors import domain_http_exception
from tenantlink.apps.api.openapi import (
    DEFAULT_ERROR_RESPONSES,
    RATE_LIMITED_RESPONSE,
    SSO_TOKEN_ERROR_RESPONSE,
)
from tenantlink.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantlink.apps.api.routes.projects import load_visible_project, project_not_found
from tenantlink.core.errors import ConfigurationError, IntegrationError, SsoTokenError
from tenantlink.domain.models import User
from tenantlink.persistence.repos import access as access_repo
from tenantlink.persistence.repos import projects as projects_repo
from tenantlink.services.access_gate import RateLimitGate
from tenantlink.services.audit import get_request_context
from tenantlink.services.integration_log import log_rate_limit_hit
from tenantlink.services.sso_tokens import TokenService


router = APIRouter(prefix="/projects", tags=["sso"], responses=DEFAULT_ERROR_RESPONSES)


class SsoRedirectResponse(BaseModel):
    project_id: str
    redirect_url: str


class SsoConsumeRequest(BaseModel):
    token: str = Field(min_length=1)


class SsoConsumeResponse(BaseModel):
    valid: bool
    user_id: str
    company_id: str
    project_id: str
    access_id: str
    external_user_id: str | None
    external_company_id: str | None
    expires_at: int


class IframeConfigResponse(BaseModel):
    project_id: str
    url: str | None
    width: str
    height: str
    sandbox: str | None


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "ACCESS_DENIED", "message": message})


@router.post(
    "/{project_id}/sso/redirect",
    response_model=SuccessEnvelope[SsoRedirectResponse],
    responses=RATE_LIMITED_RESPONSE,
)
async def sso_redirect(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    project = await projects_repo.get_project(db, project_id)
    if project is None or not project.is_active:
        raise project_not_found()
    if not project.sso_enabled:
        raise HTTPException(
            status_code=422,
            detail={"code": "SSO_DISABLED", "message": "SSO is not enabled for this project"},
        )
    if not principal.company_id:
        raise _forbidden("SSO requires a company-scoped user")

    # The row lock is held from admission until commit so breaker and counters stay serialized.
    access = await access_repo.get_access_for_update(
        db, company_id=principal.company_id, project_id=project.id
    )
    if access is None or access.status != "active":
        raise _forbidden("Company has no active access to this project")

    gate = RateLimitGate()
    decision = await gate.admit(access)
    if not decision:
        log_rate_limit_hit(
            db,
            project_id=project.id,
            access_id=access.id,
            user_id=user.id,
            endpoint=request.url.path,
            reason=decision.reason or "denied",
        )
        await db.commit()
        raise HTTPException(
            status_code=429,
            detail={
                "code": "RATE_LIMITED",
                "message": "Access temporarily throttled",
                "reason": decision.reason,
                "retry_after_s": decision.retry_after_s,
            },
            headers={"Retry-After": str(decision.retry_after_s)},
        )

    request_ctx = get_request_context(request)
    try:
        redirect_url = await TokenService().build_redirect_url(
            db,
            access=access,
            project=project,
            user=user,
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
        )
    except ConfigurationError as exc:
        # Nothing reached the partner, so neither the windows nor the breaker move.
        await db.rollback()
        raise domain_http_exception(exc) from exc
    except IntegrationError as exc:
        # The driver fails before any token or mapping is written; only breaker state is committed.
        await gate.record(access, False)
        await db.commit()
        raise domain_http_exception(exc) from exc
    await gate.record(access, True)
    await db.commit()
    data = SsoRedirectResponse(project_id=project.id, redirect_url=redirect_url)
    return success_response(request=request, data=data.model_dump())


@router.post(
    "/{slug}/sso/consume",
    response_model=SuccessEnvelope[SsoConsumeResponse],
    responses=SSO_TOKEN_ERROR_RESPONSE,
)
async def sso_consume(
    slug: str,
    payload: SsoConsumeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Called by the external project; the signed token is the only credential.
    project = await projects_repo.get_project_by_slug(db, slug)
    if project is None:
        raise project_not_found()
    request_ctx = get_request_context(request)
    try:
        claims: dict[str, Any] = await TokenService().consume(
            db,
            payload.token,
            project,
            ip_address=request_ctx["ip_address"],
            request_id=get_request_id(request),
        )
    except (SsoTokenError, ConfigurationError) as exc:
        raise domain_http_exception(exc) from exc
    data = SsoConsumeResponse(
        valid=True,
        user_id=str(claims["sub"]),
        company_id=str(claims["cid"]),
        project_id=str(claims["pid"]),
        access_id=str(claims["cpa_id"]),
        external_user_id=claims.get("ext_uid"),
        external_company_id=claims.get("ext_cid"),
        expires_at=int(claims["exp"]),
    )
    return success_response(request=request, data=data.model_dump())


@router.get("/{project_id}/iframe-callback", response_model=SuccessEnvelope[IframeConfigResponse])
async def iframe_callback(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Landing point after SSO; returns what the portal needs to embed the project.
    project = await load_visible_project(db, principal, project_id)
    data = IframeConfigResponse(
        project_id=project.id,
        url=project.admin_panel_url or project.sso_redirect_url,
        width=project.iframe_width,
        height=project.iframe_height,
        sandbox=project.iframe_sandbox,
    )
    return success_response(request=request, data=data.model_dump())
