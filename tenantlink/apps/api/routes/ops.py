from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.apps.api.deps import Principal, get_db, require_super_admin
from tenantlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantlink.apps.api.response import SuccessEnvelope, success_response
from tenantlink.domain.models import CompanyProjectAccess
from tenantlink.services.provisioning_queue import get_queue_depth
from tenantlink.services.telemetry import counters_snapshot, external_latency_by_integration


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class OpsMetricsResponse(BaseModel):
    counters: dict[str, int]
    integrations: dict[str, dict[str, Any]]
    access_status: dict[str, int]
    circuit_breakers: dict[str, int]
    queue_depth: int | None


async def _group_counts(db: AsyncSession, column) -> dict[str, int]:
    result = await db.execute(select(column, func.count()).group_by(column))
    return {str(key): int(count) for key, count in result.all()}


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=900, ge=60, le=86400),
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Process-local counters plus ledger-wide status and breaker distribution.
    payload = OpsMetricsResponse(
        counters=counters_snapshot(),
        integrations=external_latency_by_integration(window_s),
        access_status=await _group_counts(db, CompanyProjectAccess.status),
        circuit_breakers=await _group_counts(db, CompanyProjectAccess.circuit_breaker_state),
        queue_depth=await get_queue_depth(),
    )
    return success_response(request=request, data=payload.model_dump())
