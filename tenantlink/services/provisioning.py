from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.core.errors import ConfigurationError, InvalidTransitionError, TenantLinkError
from tenantlink.domain.models import (
    Company,
    CompanyProjectAccess,
    Project,
    SignupRequest,
    User,
)
from tenantlink.persistence.db import SessionLocal
from tenantlink.persistence.repos import projects as projects_repo
from tenantlink.persistence.repos import signup_requests as signup_repo
from tenantlink.providers.drivers.base import SignupResult
from tenantlink.providers.drivers.registry import DriverRegistry, get_driver_registry
from tenantlink.services.access_ledger import (
    ensure_project_user,
    get_or_create_access,
    mark_active,
    mark_partial_failed,
    store_credentials,
)
from tenantlink.services.audit import record_event
from tenantlink.services.integration_log import log_call
from tenantlink.services.provisioning_queue import SignupApprovalJobPayload, enqueue_provisioning_retry
from tenantlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RetryScheduleFn = Callable[[str], Awaitable[Any]]

# Contact fields never forwarded to external projects or stored in snapshots.
_PRIVATE_CONTACT_FIELDS = {"password", "password_confirmation"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def public_contact(contact_person: dict[str, Any] | None) -> dict[str, Any]:
    return {
        key: value
        for key, value in (contact_person or {}).items()
        if key not in _PRIVATE_CONTACT_FIELDS
    }


def build_signup_snapshot(signup_request: SignupRequest) -> dict[str, Any]:
    # Retries replay this snapshot instead of re-reading the (mutable) request row.
    return {
        "signup_request_id": signup_request.id,
        "company_data": dict(signup_request.company_data or {}),
        "contact_person": public_contact(signup_request.contact_person),
    }


@dataclass
class ApprovalResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
    partial: bool = False
    skipped: list[str] = field(default_factory=list)

    def to_log(self) -> dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [dict(item) for item in self.failed],
            "partial": self.partial,
            "skipped": list(self.skipped),
        }


async def provision_access(
    session: AsyncSession,
    *,
    access: CompanyProjectAccess,
    project: Project,
    company_data: dict[str, Any],
    contact_person: dict[str, Any],
    admin_user_id: str | None,
    approved_by: str | None,
    registry: DriverRegistry | None = None,
) -> SignupResult:
    """Run one external signup for a ledger entry and record the outcome on it.

    On success the entry becomes active with its external ids and encrypted
    credentials. On any failure it is left partial_failed with last_error set
    and the error is re-raised for the caller to account for.
    """
    driver = (registry or get_driver_registry()).resolve(project)
    user_data = public_contact(contact_person)
    try:
        result = await driver.signup(project, dict(company_data or {}), user_data)
    except Exception as exc:  # noqa: BLE001 - every driver failure is recorded on the entry
        message = str(exc) or exc.__class__.__name__
        log_call(
            session,
            project_id=project.id,
            access_id=access.id,
            user_id=admin_user_id,
            call=getattr(exc, "call", None),
            error=message,
        )
        # A misconfigured project fails the same way on every attempt.
        mark_partial_failed(access, message, auto_retry=not isinstance(exc, ConfigurationError))
        increment_counter("provisioning_step_failed_total")
        logger.warning(
            "provisioning_step_failed access_id=%s project_id=%s driver=%s error_type=%s",
            access.id,
            project.id,
            getattr(driver, "name", driver.__class__.__name__),
            exc.__class__.__name__,
        )
        raise

    log_call(
        session,
        project_id=project.id,
        access_id=access.id,
        user_id=admin_user_id,
        call=result.call,
    )
    access.external_company_id = result.external_company_id
    if result.credentials:
        store_credentials(access, result.credentials)
    mark_active(access, approved_by=approved_by)
    if result.external_user_id and admin_user_id:
        await ensure_project_user(
            session,
            access=access,
            user_id=admin_user_id,
            external_user_id=result.external_user_id,
            external_username=result.external_username or user_data.get("email"),
        )
    increment_counter("provisioning_step_succeeded_total")
    logger.info("provisioning_step_succeeded access_id=%s project_id=%s", access.id, project.id)
    return result


class ApprovalOrchestrator:
    def __init__(
        self,
        *,
        registry: DriverRegistry | None = None,
        schedule_retry: RetryScheduleFn | None = None,
    ) -> None:
        self._registry = registry
        # Injected so tests can observe the deferred retry without a queue.
        self._schedule_retry = schedule_retry or enqueue_provisioning_retry

    async def approve(
        self,
        session: AsyncSession,
        *,
        signup_request: SignupRequest,
        approver: User,
        selected_project_ids: list[str] | None = None,
        request_id: str | None = None,
    ) -> ApprovalResult:
        if signup_request.status != "pending":
            raise InvalidTransitionError(
                f"signup request {signup_request.id} is {signup_request.status}, not pending"
            )
        company = await session.get(Company, signup_request.company_id)
        if company is None:
            raise TenantLinkError(f"signup request {signup_request.id} has no company")

        company.status = "active"
        admin_user = await signup_repo.get_company_admin(session, company_id=company.id)
        if admin_user is not None and admin_user.status == "pending":
            admin_user.status = "active"

        snapshot = build_signup_snapshot(signup_request)
        target_ids = list(
            selected_project_ids if selected_project_ids is not None else signup_request.requested_projects or []
        )
        projects = await projects_repo.get_projects_by_ids(session, target_ids)
        result = ApprovalResult()

        for project_id in dict.fromkeys(target_ids):
            project = projects.get(project_id)
            if project is None:
                logger.warning(
                    "approval_unknown_project signup_request_id=%s project_id=%s",
                    signup_request.id,
                    project_id,
                )
                result.skipped.append(project_id)
                continue
            await self._approve_project(
                session,
                result=result,
                company=company,
                project=project,
                admin_user=admin_user,
                approver=approver,
                snapshot=snapshot,
                signup_request=signup_request,
            )

        signup_request.status = "partial_approved" if result.partial else "approved"
        signup_request.reviewed_by = approver.id
        signup_request.reviewed_at = _utc_now()
        signup_request.api_calls_log = result.to_log()
        await record_event(
            session=session,
            company_id=company.id,
            actor_type="user",
            actor_id=approver.id,
            actor_role=approver.role,
            event_type="signup_request.approved",
            outcome="partial" if result.partial else "success",
            resource_type="signup_request",
            resource_id=signup_request.id,
            request_id=request_id,
            metadata={
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "skipped": len(result.skipped),
            },
        )
        await session.commit()
        logger.info(
            "signup_request_approved signup_request_id=%s status=%s succeeded=%s failed=%s",
            signup_request.id,
            signup_request.status,
            len(result.succeeded),
            len(result.failed),
        )

        if result.partial:
            try:
                await self._schedule_retry(signup_request.id)
            except Exception as exc:  # noqa: BLE001 - the periodic sweep still picks the entries up
                logger.warning(
                    "provisioning_retry_schedule_failed signup_request_id=%s",
                    signup_request.id,
                    exc_info=exc,
                )
        return result

    async def _approve_project(
        self,
        session: AsyncSession,
        *,
        result: ApprovalResult,
        company: Company,
        project: Project,
        admin_user: User | None,
        approver: User,
        snapshot: dict[str, Any],
        signup_request: SignupRequest,
    ) -> None:
        access, _ = await get_or_create_access(session, company_id=company.id, project_id=project.id)
        if access.status == "active":
            result.succeeded.append(project.name)
            return
        if access.status not in {"pending", "partial_failed"}:
            # Suspended or revoked entries need an operator decision, not a fresh signup.
            result.failed.append(
                {"project": project.name, "project_id": project.id, "error": f"Access is {access.status}"}
            )
            result.partial = True
            return

        access.signup_request_id = signup_request.id
        access.signup_request_data = snapshot
        try:
            await provision_access(
                session,
                access=access,
                project=project,
                company_data=snapshot["company_data"],
                contact_person=snapshot["contact_person"],
                admin_user_id=admin_user.id if admin_user else None,
                approved_by=approver.id,
                registry=self._registry,
            )
        except Exception as exc:  # noqa: BLE001 - one project's failure never aborts the others
            message = str(exc) or exc.__class__.__name__
            # The step normally marks the entry itself; this also covers failures after signup returned.
            access.status = "partial_failed"
            access.last_error = message
            access.retry_count = 0
            access.auto_retry = not isinstance(exc, ConfigurationError)
            result.failed.append({"project": project.name, "project_id": project.id, "error": message})
            result.partial = True
            logger.error(
                "project_signup_failed project_id=%s company_id=%s",
                project.id,
                company.id,
            )
            return
        result.succeeded.append(project.name)

    async def reject(
        self,
        session: AsyncSession,
        *,
        signup_request: SignupRequest,
        approver: User,
        reason: str | None = None,
        request_id: str | None = None,
    ) -> SignupRequest:
        if signup_request.status != "pending":
            raise InvalidTransitionError(
                f"signup request {signup_request.id} is {signup_request.status}, not pending"
            )
        signup_request.status = "rejected"
        signup_request.reviewed_by = approver.id
        signup_request.reviewed_at = _utc_now()
        signup_request.rejection_reason = reason
        await record_event(
            session=session,
            company_id=signup_request.company_id,
            actor_type="user",
            actor_id=approver.id,
            actor_role=approver.role,
            event_type="signup_request.rejected",
            outcome="success",
            resource_type="signup_request",
            resource_id=signup_request.id,
            request_id=request_id,
        )
        await session.commit()
        logger.info("signup_request_rejected signup_request_id=%s", signup_request.id)
        return signup_request


async def process_signup_approval(payload: SignupApprovalJobPayload) -> dict[str, Any] | None:
    # Shared by the worker job and inline mode; a request already reviewed is a no-op.
    async with SessionLocal() as session:
        signup_request = await signup_repo.get_signup_request(
            session, payload.signup_request_id, for_update=True
        )
        approver = await session.get(User, payload.approver_id)
        if signup_request is None or approver is None:
            logger.warning(
                "signup_approval_job_missing signup_request_id=%s approver_id=%s",
                payload.signup_request_id,
                payload.approver_id,
            )
            return None
        if signup_request.status != "pending":
            logger.info(
                "signup_approval_job_skipped signup_request_id=%s status=%s",
                signup_request.id,
                signup_request.status,
            )
            return signup_request.api_calls_log
        result = await ApprovalOrchestrator().approve(
            session,
            signup_request=signup_request,
            approver=approver,
            selected_project_ids=payload.selected_projects,
            request_id=payload.request_id,
        )
        return result.to_log()
