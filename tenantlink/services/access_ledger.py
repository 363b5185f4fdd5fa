from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.core.config import get_settings
from tenantlink.core.errors import InvalidTransitionError
from tenantlink.domain.models import CompanyProjectAccess, CompanyProjectUser
from tenantlink.persistence.repos import access as access_repo
from tenantlink.services.crypto.secrets import decrypt_credentials, encrypt_credentials


logger = logging.getLogger(__name__)

ACCESS_STATUSES = ("pending", "active", "suspended", "revoked", "partial_failed")

# Same-state writes are always allowed and treated as no-ops.
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active", "partial_failed", "suspended", "revoked"}),
    "partial_failed": frozenset({"pending", "active", "revoked"}),
    "active": frozenset({"suspended", "revoked"}),
    "suspended": frozenset({"active", "revoked"}),
    "revoked": frozenset({"pending", "active"}),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    if target not in ACCESS_STATUSES:
        return False
    if current == target:
        return True
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_status(access: CompanyProjectAccess, target: str) -> None:
    # Guard every status change so illegal jumps surface as conflicts.
    current = access.status or "pending"
    if not can_transition(current, target):
        raise InvalidTransitionError(f"access {access.id} cannot move from {current} to {target}")
    if current != target:
        logger.info("access_status_transition access_id=%s from=%s to=%s", access.id, current, target)
    access.status = target


def new_access(
    *,
    company_id: str,
    project_id: str,
    status: str = "pending",
    rate_limit_per_minute: int | None = None,
    rate_limit_per_hour: int | None = None,
) -> CompanyProjectAccess:
    # Populate defaults eagerly so the entry is usable before the first flush.
    settings = get_settings()
    return CompanyProjectAccess(
        id=uuid4().hex,
        company_id=company_id,
        project_id=project_id,
        status=status,
        retry_count=0,
        rate_limit_per_minute=rate_limit_per_minute or settings.rl_default_per_minute,
        rate_limit_per_hour=rate_limit_per_hour or settings.rl_default_per_hour,
        circuit_breaker_state="closed",
        circuit_breaker_failures=0,
        circuit_breaker_reset_at=None,
    )


async def get_or_create_access(
    session: AsyncSession,
    *,
    company_id: str,
    project_id: str,
    **defaults: Any,
) -> tuple[CompanyProjectAccess, bool]:
    """Return the ledger entry for (company, project), creating it if absent.

    The insert runs inside a savepoint so a concurrent creator hitting the
    unique constraint only rolls back this attempt, not the caller's transaction.
    """
    existing = await access_repo.get_access(session, company_id=company_id, project_id=project_id)
    if existing is not None:
        return existing, False
    access = new_access(company_id=company_id, project_id=project_id, **defaults)
    try:
        async with session.begin_nested():
            session.add(access)
            await session.flush()
    except IntegrityError:
        logger.info(
            "access_create_race company_id=%s project_id=%s", company_id, project_id
        )
        existing = await access_repo.get_access(session, company_id=company_id, project_id=project_id)
        if existing is None:
            raise
        return existing, False
    return access, True


def mark_partial_failed(access: CompanyProjectAccess, error: str, *, auto_retry: bool = True) -> None:
    transition_status(access, "partial_failed")
    access.last_error = error or "unknown error"
    access.auto_retry = auto_retry


def mark_active(
    access: CompanyProjectAccess,
    *,
    approved_by: str | None,
    now: datetime | None = None,
) -> None:
    transition_status(access, "active")
    stamp = now or _utc_now()
    access.approved_at = stamp
    access.approved_by = approved_by
    access.last_sync_at = stamp
    access.last_error = None
    access.auto_retry = True


def store_credentials(access: CompanyProjectAccess, credentials: dict[str, str | None]) -> None:
    # Merge with existing secrets; each value is encrypted individually.
    encrypted = encrypt_credentials(credentials)
    if not encrypted:
        return
    merged = dict(access.api_credentials or {})
    merged.update(encrypted)
    access.api_credentials = merged


def read_credentials(access: CompanyProjectAccess) -> dict[str, str]:
    return decrypt_credentials(access.api_credentials)


async def ensure_project_user(
    session: AsyncSession,
    *,
    access: CompanyProjectAccess,
    user_id: str,
    external_user_id: str | None = None,
    external_username: str | None = None,
    external_role: str | None = None,
) -> CompanyProjectUser:
    # Create-if-absent keyed by (access, user); an existing mapping is never overwritten.
    existing = await access_repo.get_project_user(session, access_id=access.id, user_id=user_id)
    if existing is not None:
        return existing
    mapping = CompanyProjectUser(
        id=uuid4().hex,
        access_id=access.id,
        user_id=user_id,
        external_user_id=external_user_id,
        external_username=external_username,
        external_role=external_role,
        status="active",
    )
    try:
        async with session.begin_nested():
            session.add(mapping)
            await session.flush()
    except IntegrityError:
        existing = await access_repo.get_project_user(session, access_id=access.id, user_id=user_id)
        if existing is None:
            raise
        return existing
    return mapping


def serialize_access(access: CompanyProjectAccess) -> dict[str, Any]:
    # Public view of a ledger entry; credentials are reported by name only.
    return {
        "id": access.id,
        "company_id": access.company_id,
        "project_id": access.project_id,
        "status": access.status,
        "external_company_id": access.external_company_id,
        "credential_names": sorted((access.api_credentials or {}).keys()),
        "retry_count": access.retry_count,
        "auto_retry": access.auto_retry,
        "last_error": access.last_error,
        "rate_limit_per_minute": access.rate_limit_per_minute,
        "rate_limit_per_hour": access.rate_limit_per_hour,
        "circuit_breaker_state": access.circuit_breaker_state,
        "circuit_breaker_failures": access.circuit_breaker_failures,
        "circuit_breaker_reset_at": access.circuit_breaker_reset_at.isoformat()
        if access.circuit_breaker_reset_at
        else None,
        "approved_at": access.approved_at.isoformat() if access.approved_at else None,
        "approved_by": access.approved_by,
        "last_sync_at": access.last_sync_at.isoformat() if access.last_sync_at else None,
    }
