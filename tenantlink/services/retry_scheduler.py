from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantlink.core.config import get_settings
from tenantlink.core.errors import ConfigurationError, InvalidTransitionError
from tenantlink.domain.models import CompanyProjectAccess, Project
from tenantlink.persistence.db import SessionLocal
from tenantlink.persistence.repos import access as access_repo
from tenantlink.persistence.repos import signup_requests as signup_repo
from tenantlink.providers.drivers.registry import DriverRegistry
from tenantlink.services.audit import record_event
from tenantlink.services.provisioning import build_signup_snapshot, provision_access
from tenantlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class ManualRetryResult:
    succeeded: bool
    error: str | None = None


class _RetryDataMissing(Exception):
    pass


class RetryScheduler:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        registry: DriverRegistry | None = None,
        max_retries: int | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._registry = registry
        self._max_retries = max_retries or get_settings().provisioning_max_retries

    async def run_retry_pass(
        self,
        *,
        company_id: str | None = None,
        signup_request_id: str | None = None,
    ) -> dict[str, int]:
        """Retry every partial_failed entry still under the attempt ceiling.

        Each entry runs in its own session and transaction, so a crash or
        failure on one entry never loses or rolls back work on another.
        """
        async with self._session_factory() as session:
            access_ids = await access_repo.list_retryable_access_ids(
                session,
                max_retries=self._max_retries,
                company_id=company_id,
                signup_request_id=signup_request_id,
            )

        summary = {"attempted": 0, OUTCOME_SUCCEEDED: 0, OUTCOME_FAILED: 0, OUTCOME_EXHAUSTED: 0}
        for access_id in access_ids:
            outcome = await self.retry_entry(access_id)
            if outcome == OUTCOME_SKIPPED:
                continue
            summary["attempted"] += 1
            if outcome == OUTCOME_SUCCEEDED:
                summary[OUTCOME_SUCCEEDED] += 1
            else:
                summary[OUTCOME_FAILED] += 1
                if outcome == OUTCOME_EXHAUSTED:
                    summary[OUTCOME_EXHAUSTED] += 1
        if access_ids:
            logger.info("provisioning_retry_pass_complete summary=%s", summary)
        return summary

    async def retry_entry(self, access_id: str) -> str:
        async with self._session_factory() as session:
            # Re-check status and ceiling under the row lock; another worker may have handled it.
            access = await access_repo.claim_retryable_access(
                session, access_id=access_id, max_retries=self._max_retries
            )
            if access is None:
                await session.rollback()
                return OUTCOME_SKIPPED
            try:
                await self._run_step(session, access)
            except Exception as exc:  # noqa: BLE001 - failures are recorded on the entry
                outcome = await self._record_failure(session, access, exc)
                await session.commit()
                return outcome
            access.retry_count = 0
            access.last_error = None
            await session.commit()
            increment_counter("provisioning_retry_succeeded_total")
            logger.info("provisioning_retry_succeeded access_id=%s", access.id)
            return OUTCOME_SUCCEEDED

    async def manual_retry(
        self,
        session: AsyncSession,
        access: CompanyProjectAccess,
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> ManualRetryResult:
        # Operator action: one attempt regardless of retry_count; the count never exceeds the ceiling.
        if access.status not in {"partial_failed", "pending"}:
            raise InvalidTransitionError(f"access {access.id} is {access.status}; nothing to retry")
        error: str | None = None
        try:
            await self._run_step(session, access, approved_by=actor_id)
        except Exception as exc:  # noqa: BLE001 - failures are recorded on the entry
            error = str(exc) or exc.__class__.__name__
            access.status = "partial_failed"
            access.last_error = error
            access.retry_count = min((access.retry_count or 0) + 1, self._max_retries)
            access.auto_retry = not isinstance(exc, ConfigurationError)
        else:
            access.retry_count = 0
            access.last_error = None
        await record_event(
            session=session,
            company_id=access.company_id,
            actor_type="user",
            actor_id=actor_id,
            event_type="provisioning.manual_retry",
            outcome="success" if error is None else "failure",
            resource_type="company_project_access",
            resource_id=access.id,
            request_id=request_id,
            metadata={"project_id": access.project_id},
        )
        await session.commit()
        logger.info(
            "provisioning_manual_retry access_id=%s succeeded=%s", access.id, error is None
        )
        return ManualRetryResult(succeeded=error is None, error=error)

    async def _run_step(
        self,
        session: AsyncSession,
        access: CompanyProjectAccess,
        *,
        approved_by: str | None = None,
    ) -> None:
        project = await session.get(Project, access.project_id)
        if project is None:
            raise _RetryDataMissing(f"Project {access.project_id} no longer exists")
        snapshot = await self._load_snapshot(session, access)
        admin_user = await signup_repo.get_company_admin(session, company_id=access.company_id)
        await provision_access(
            session,
            access=access,
            project=project,
            company_data=snapshot.get("company_data") or {},
            contact_person=snapshot.get("contact_person") or {},
            admin_user_id=admin_user.id if admin_user else None,
            approved_by=approved_by or access.approved_by,
            registry=self._registry,
        )

    async def _load_snapshot(self, session: AsyncSession, access: CompanyProjectAccess) -> dict[str, Any]:
        if access.signup_request_data:
            return access.signup_request_data
        if access.signup_request_id:
            signup_request = await signup_repo.get_signup_request(session, access.signup_request_id)
            if signup_request is not None:
                snapshot = build_signup_snapshot(signup_request)
                access.signup_request_data = snapshot
                return snapshot
        raise _RetryDataMissing("No signup data available for retry")

    async def _record_failure(
        self,
        session: AsyncSession,
        access: CompanyProjectAccess,
        exc: Exception,
    ) -> str:
        message = str(exc) or exc.__class__.__name__
        access.status = "partial_failed"
        access.retry_count = (access.retry_count or 0) + 1
        access.last_error = message
        increment_counter("provisioning_retry_failed_total")
        configuration_error = isinstance(exc, ConfigurationError)
        if configuration_error:
            access.auto_retry = False
        elif access.retry_count < self._max_retries:
            logger.info(
                "provisioning_retry_failed access_id=%s retry_count=%s", access.id, access.retry_count
            )
            return OUTCOME_FAILED
        # Ceiling reached or project misconfigured: no further automatic attempts.
        logger.warning(
            "provisioning_retry_exhausted access_id=%s project_id=%s retry_count=%s",
            access.id,
            access.project_id,
            access.retry_count,
        )
        increment_counter("provisioning_manual_attention_total")
        await record_event(
            session=session,
            company_id=access.company_id,
            actor_type="system",
            actor_id="retry_scheduler",
            event_type="provisioning.manual_attention",
            outcome="failure",
            resource_type="company_project_access",
            resource_id=access.id,
            metadata={
                "project_id": access.project_id,
                "retry_count": access.retry_count,
                "reason": "configuration" if configuration_error else "retries_exhausted",
            },
        )
        return OUTCOME_EXHAUSTED
