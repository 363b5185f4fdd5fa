from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncGenerator
import asyncio
import logging
import time

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.core.config import get_settings
from tenantlink.domain.models import ApiKey, User
from tenantlink.persistence.db import SessionLocal, get_session
from tenantlink.services.audit import get_request_context, record_event
from tenantlink.services.auth.api_keys import key_id_from_raw, normalize_role, verify_api_key


logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    """Caller identity attached to ``request.state.principal``.

    ``company_id`` is None only for super admins; every company-scoped query
    filters on it.
    """

    user_id: str
    company_id: str | None
    role: str
    api_key_id: str
    auth_method: str = "api_key"

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"


class AuthFailure(Exception):
    """Raised while resolving credentials; turned into an audited 401."""


@dataclass
class _CachedPrincipal:
    principal: Principal
    key_hash: str
    expires_at: float


class _PrincipalCache:
    # Entries are keyed by key id and pinned to the hash they were verified with.
    def __init__(self) -> None:
        self._entries: dict[str, _CachedPrincipal] = {}
        self._lock = asyncio.Lock()

    async def get(self, key_id: str, raw_key: str) -> Principal | None:
        async with self._lock:
            entry = self._entries.get(key_id)
            if entry is None:
                return None
            if entry.expires_at <= time.monotonic():
                del self._entries[key_id]
                return None
        if not verify_api_key(raw_key, entry.key_hash):
            return None
        return entry.principal

    async def put(self, key_id: str, key_hash: str, principal: Principal, ttl_s: int) -> None:
        if ttl_s <= 0:
            return
        async with self._lock:
            self._entries[key_id] = _CachedPrincipal(
                principal=principal, key_hash=key_hash, expires_at=time.monotonic() + ttl_s
            )

    def clear(self) -> None:
        self._entries.clear()


_principal_cache = _PrincipalCache()


def reset_auth_cache() -> None:
    _principal_cache.clear()


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _bearer_token(request: Request, header_name: str) -> str | None:
    header_value = request.headers.get(header_name)
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise AuthFailure("Missing or invalid bearer token")
    return token


def _dev_principal(request: Request) -> Principal:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise AuthFailure("X-User-Id header is required in dev bypass mode")
    if request.headers.get("X-Super-Admin", "").lower() in _TRUTHY:
        requested_role = "super_admin"
    else:
        requested_role = request.headers.get("X-Role", "company_admin")
    try:
        role = normalize_role(requested_role)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        user_id=user_id,
        company_id=request.headers.get("X-Company-Id"),
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def _load_key_owner(db: AsyncSession, raw_key: str) -> tuple[ApiKey, User]:
    key_id = key_id_from_raw(raw_key)
    if key_id is None:
        raise AuthFailure("Invalid API key")
    row = (
        await db.execute(select(ApiKey, User).join(User, User.id == ApiKey.user_id).where(ApiKey.id == key_id))
    ).first()
    if row is None or not verify_api_key(raw_key, row[0].key_hash):
        raise AuthFailure("Invalid API key")
    api_key, user = row
    if api_key.revoked_at is not None:
        raise AuthFailure("API key revoked")
    if api_key.expires_at is not None and api_key.expires_at <= datetime.now(timezone.utc):
        raise AuthFailure("API key expired")
    if user.status != "active":
        raise AuthFailure("User is not active")
    return api_key, user


async def _mark_key_used(api_key_id: str) -> None:
    async with SessionLocal() as session:
        try:
            await session.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now()))
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("api_key_touch_failed api_key_id=%s error=%s", api_key_id, exc)


async def _record_auth_outcome(
    db: AsyncSession,
    request: Request,
    *,
    principal: Principal | None,
    error_code: str | None = None,
) -> None:
    context = get_request_context(request)
    outcome = "success" if principal is not None else "failure"
    metadata = {"path": request.url.path, "method": request.method}
    if principal is not None and principal.auth_method != "api_key":
        metadata["auth_mode"] = principal.auth_method
    await record_event(
        session=db,
        company_id=principal.company_id if principal else None,
        actor_type="user" if principal else "anonymous",
        actor_id=principal.user_id if principal else None,
        actor_role=principal.role if principal else None,
        event_type=f"auth.access.{outcome}",
        outcome=outcome,
        resource_type="auth",
        request_id=context["request_id"],
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
        metadata=metadata,
        error_code=error_code,
        commit=True,
    )


async def _authenticate(db: AsyncSession, request: Request) -> Principal:
    settings = get_settings()
    token = _bearer_token(request, settings.auth_api_key_header)
    if token is None or not settings.auth_enabled:
        if settings.auth_dev_bypass:
            principal = _dev_principal(request)
            await _record_auth_outcome(db, request, principal=principal)
            return principal
        if not settings.auth_enabled:
            raise AuthFailure("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise AuthFailure("Missing or invalid bearer token")

    key_id = key_id_from_raw(token)
    if key_id is not None:
        cached = await _principal_cache.get(key_id, token)
        if cached is not None:
            return cached

    api_key, user = await _load_key_owner(db, token)
    principal = Principal(user_id=user.id, company_id=user.company_id, role=user.role, api_key_id=api_key.id)
    await _principal_cache.put(api_key.id, api_key.key_hash, principal, settings.auth_cache_ttl_s)
    await _mark_key_used(api_key.id)
    return principal


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    try:
        principal = await _authenticate(db, request)
    except AuthFailure as exc:
        await _record_auth_outcome(db, request, principal=None, error_code="AUTH_UNAUTHORIZED")
        raise _unauthorized(str(exc)) from exc
    except HTTPException as exc:
        code = exc.detail.get("code") if isinstance(exc.detail, dict) else None
        await _record_auth_outcome(db, request, principal=None, error_code=code)
        raise
    request.state.principal = principal
    return principal


async def require_super_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if not principal.is_super_admin:
        raise _forbidden("Super admin access required")
    return principal


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, principal.user_id)
    if user is None:
        raise _unauthorized("Authenticated user no longer exists")
    return user
