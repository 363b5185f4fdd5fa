from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.domain.models import ApiIntegrationLog
from tenantlink.providers.drivers.base import CallRecord


def log_call(
    session: AsyncSession,
    *,
    project_id: str,
    call: CallRecord | None,
    access_id: str | None = None,
    user_id: str | None = None,
    error: str | None = None,
) -> ApiIntegrationLog:
    # Append-only; rows ride on the caller's transaction.
    entry = ApiIntegrationLog(
        access_id=access_id,
        project_id=project_id,
        user_id=user_id,
        endpoint=call.endpoint if call else None,
        method=call.method if call else None,
        response_status=call.status_code if call else None,
        error_message=(call.error if call and call.error else error),
        rate_limit_hit=False,
        duration_ms=call.duration_ms if call else None,
    )
    session.add(entry)
    return entry


def log_rate_limit_hit(
    session: AsyncSession,
    *,
    project_id: str,
    access_id: str,
    user_id: str | None,
    endpoint: str,
    reason: str,
) -> ApiIntegrationLog:
    # Denied admissions are recorded so operators can see throttling per access entry.
    entry = ApiIntegrationLog(
        access_id=access_id,
        project_id=project_id,
        user_id=user_id,
        endpoint=endpoint,
        method="POST",
        response_status=429,
        error_message=reason,
        rate_limit_hit=True,
        duration_ms=0,
    )
    session.add(entry)
    return entry


async def list_calls(
    session: AsyncSession,
    *,
    access_id: str,
    limit: int = 50,
) -> list[ApiIntegrationLog]:
    result = await session.execute(
        select(ApiIntegrationLog)
        .where(ApiIntegrationLog.access_id == access_id)
        .order_by(ApiIntegrationLog.created_at.desc(), ApiIntegrationLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
