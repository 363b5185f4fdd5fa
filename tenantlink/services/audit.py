from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenantlink.domain.models import AuditEvent
from tenantlink.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
# Key fragments whose values never reach the audit table.
_SENSITIVE_KEY_FRAGMENTS = (
    "api_key",
    "api_secret",
    "authorization",
    "credential",
    "password",
    "secret",
    "token",
)
# Values that look like a signed SSO token or a platform API key, whatever their key.
_SENSITIVE_VALUE_PATTERNS = (
    re.compile(r"^[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}$"),
    re.compile(r"^tlk_[0-9a-f]{32}_"),
)


def _sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def _sensitive_value(value: str) -> bool:
    return any(pattern.search(value) for pattern in _SENSITIVE_VALUE_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` safe to persist as audit metadata.

    Dict entries are dropped to ``[REDACTED]`` by key name; any string that
    looks like a JWT or a platform API key is redacted wherever it appears.
    """
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and _sensitive_value(value):
        return REDACTED
    return value


def _client_ip(request: Request) -> str | None:
    # Partner callbacks usually arrive through a proxy; the first forwarded hop is the caller.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return {
        "request_id": request_id,
        "ip_address": _client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


def _report_write_failure(exc: SQLAlchemyError, *, event_type: str, best_effort: bool) -> None:
    if not best_effort:
        logger.error("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
        raise exc
    logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    company_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one audit row.

    With a session the row joins the caller's transaction and is committed
    only when ``commit`` is set. Without one it is written in its own session.
    Write failures are logged and swallowed unless ``best_effort`` is False.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        company_id=company_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as own_session:
            own_session.add(event)
            try:
                await own_session.commit()
            except SQLAlchemyError as exc:
                await own_session.rollback()
                _report_write_failure(exc, event_type=event_type, best_effort=best_effort)
        return

    session.add(event)
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        _report_write_failure(exc, event_type=event_type, best_effort=best_effort)
