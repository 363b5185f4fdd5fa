from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from uuid import uuid4

import jwt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantlink.core.config import get_settings
from tenantlink.core.errors import (
    ConfigurationError,
    SsoTokenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReplayError,
    TokenRevokedError,
    TokenUnknownError,
)
from tenantlink.domain.models import (
    CompanyProjectAccess,
    CompanyProjectUser,
    Project,
    SSOTokenUsage,
    User,
)
from tenantlink.services.access_ledger import ensure_project_user
from tenantlink.providers.drivers.registry import DriverRegistry, get_driver_registry
from tenantlink.services.audit import record_event
from tenantlink.services.crypto.secrets import decrypt_optional
from tenantlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
# Claims every platform token must carry; consume rejects tokens missing any of them.
REQUIRED_CLAIMS = ["iss", "aud", "sub", "exp", "iat", "jti", "cid", "pid", "cpa_id"]


@dataclass(frozen=True)
class MintedToken:
    token: str = ""
    jti: str = ""
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        # Keep the signed token out of logs and tracebacks.
        return f"MintedToken(jti={self.jti!r}, expires_at={self.expires_at!r})"


def _signing_secret(project: Project) -> str:
    secret = decrypt_optional(project.api_secret)
    if not secret:
        raise ConfigurationError(f"Project {project.slug} has no SSO signing secret")
    return secret


def append_query_params(url: str, params: dict[str, str]) -> str:
    # Preserve any query string the project already configured.
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class TokenService:
    def __init__(
        self,
        *,
        time_provider: Callable[[], float] | None = None,
        issuer: str | None = None,
        clock_skew_seconds: int | None = None,
        registry: DriverRegistry | None = None,
    ) -> None:
        settings = get_settings()
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        self._issuer = issuer or settings.sso_issuer
        self._skew = settings.sso_clock_skew_seconds if clock_skew_seconds is None else clock_skew_seconds
        self._registry = registry

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._time_provider(), tz=timezone.utc)

    async def mint(
        self,
        session: AsyncSession,
        *,
        access: CompanyProjectAccess,
        project: Project,
        user: User,
        project_user: CompanyProjectUser | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> MintedToken:
        """Sign a single-use token and persist its usage row before returning it.

        The usage row, not the token, is what consume() checks, so the row is
        flushed on the caller's transaction and becomes visible when it commits.
        """
        secret = _signing_secret(project)
        now = self._now().replace(microsecond=0)
        expires_at = now + timedelta(seconds=int(project.sso_token_expiry))
        jti = str(uuid4())
        external_user_id = (
            project_user.external_user_id if project_user and project_user.external_user_id else None
        ) or access.external_company_id
        claims: dict[str, Any] = {
            "iss": self._issuer,
            "aud": project.slug,
            "sub": str(user.id),
            "exp": int(expires_at.timestamp()),
            "iat": int(now.timestamp()),
            "jti": jti,
            "cid": str(access.company_id),
            "pid": str(project.id),
            "cpa_id": str(access.id),
            "ext_uid": external_user_id,
            "ext_cid": access.external_company_id,
        }
        token = jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)

        session.add(
            SSOTokenUsage(
                jti=jti,
                access_id=access.id,
                user_id=user.id,
                project_id=project.id,
                issued_at=now,
                expires_at=expires_at,
                status="issued",
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        await session.flush()
        increment_counter("sso_tokens_minted_total")
        logger.info("sso_token_minted project_id=%s access_id=%s jti=%s", project.id, access.id, jti)
        return MintedToken(token=token, jti=jti, issued_at=now, expires_at=expires_at)

    async def build_redirect_url(
        self,
        session: AsyncSession,
        *,
        access: CompanyProjectAccess,
        project: Project,
        user: User,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        # Redirect target is resolved before minting so a misconfigured project leaves no usage row.
        target = project.sso_redirect_url or project.admin_panel_url
        if not target:
            # Drivers may know an entry point the project row does not; IntegrationError propagates.
            driver = (self._registry or get_driver_registry()).resolve(project)
            target = await driver.resolve_sso_url(project, access, user)
        if not target:
            raise ConfigurationError(f"Project {project.slug} has no SSO redirect URL")
        project_user = await ensure_project_user(session, access=access, user_id=user.id)
        minted = await self.mint(
            session,
            access=access,
            project=project,
            user=user,
            project_user=project_user,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        project_user.last_sso_at = minted.issued_at
        callback = project.sso_callback_url or get_settings().sso_platform_callback_url.format(
            project_id=project.id
        )
        return append_query_params(target, {"token": minted.token, "callback": callback})

    def _decode(self, token: str, project: Project) -> dict[str, Any]:
        # Signature, issuer and audience; expiry is checked separately against the service clock.
        secret = _signing_secret(project)
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                audience=project.slug,
                issuer=self._issuer,
                options={"verify_exp": False, "verify_iat": False, "require": REQUIRED_CLAIMS},
            )
        except jwt.PyJWTError as exc:
            raise TokenInvalidError(f"Token failed verification: {exc.__class__.__name__}") from exc
        if str(claims.get("pid")) != str(project.id):
            raise TokenInvalidError("Token was issued for a different project")
        return claims

    async def consume(
        self,
        session: AsyncSession,
        token: str,
        project: Project,
        *,
        ip_address: str | None = None,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate and consume a token exactly once; commits its own transaction.

        Checks run in order: signature/issuer/audience, expiry, then a single
        conditional issued -> used update on the jti. Only the update decides
        success, so concurrent consumers of one token see exactly one winner.
        """
        claims: dict[str, Any] | None = None
        try:
            claims = self._decode(token, project)
            jti = str(claims["jti"])
            now = self._now()
            if now.timestamp() >= int(claims["exp"]) + self._skew:
                await session.execute(
                    update(SSOTokenUsage)
                    .where(SSOTokenUsage.jti == jti, SSOTokenUsage.status == "issued")
                    .values(status="expired")
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                raise TokenExpiredError("Token has expired")

            result = await session.execute(
                update(SSOTokenUsage)
                .where(SSOTokenUsage.jti == jti, SSOTokenUsage.status == "issued")
                .values(status="used", used_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.commit()
                increment_counter("sso_tokens_consumed_total")
                logger.info("sso_token_consumed project_id=%s jti=%s", project.id, jti)
                return claims

            current = await session.scalar(select(SSOTokenUsage.status).where(SSOTokenUsage.jti == jti))
            await session.rollback()
            if current is None:
                raise TokenUnknownError("Token not found in usage log")
            if current == "revoked":
                raise TokenRevokedError("Token revoked")
            if current == "expired":
                raise TokenExpiredError("Token has expired")
            raise TokenReplayError("Token already used")
        except SsoTokenError as exc:
            await self._report_rejection(
                session,
                project=project,
                claims=claims,
                error=exc,
                ip_address=ip_address,
                request_id=request_id,
            )
            raise

    async def _report_rejection(
        self,
        session: AsyncSession,
        *,
        project: Project,
        claims: dict[str, Any] | None,
        error: SsoTokenError,
        ip_address: str | None,
        request_id: str | None,
    ) -> None:
        # Investigation context only: jti and ids, never the token or the secret.
        jti = str(claims["jti"]) if claims and claims.get("jti") else None
        increment_counter(f"sso_token_rejected_total.{error.code}")
        logger.warning(
            "sso_token_rejected project_id=%s jti=%s code=%s ip=%s",
            project.id,
            jti,
            error.code,
            ip_address,
        )
        if session.in_transaction():
            await session.rollback()
        await record_event(
            session=session,
            company_id=str(claims["cid"]) if claims and claims.get("cid") else None,
            actor_type="external",
            actor_id=project.slug,
            event_type="sso.token.rejected",
            outcome="failure",
            resource_type="sso_token",
            resource_id=jti,
            request_id=request_id,
            ip_address=ip_address,
            metadata={"project_id": project.id, "reason": str(error)},
            error_code=error.code,
            commit=True,
        )

    async def revoke_token(self, session: AsyncSession, jti: str) -> bool:
        # Only unused tokens can be revoked; used and expired rows are final.
        result = await session.execute(
            update(SSOTokenUsage)
            .where(SSOTokenUsage.jti == jti, SSOTokenUsage.status == "issued")
            .values(status="revoked")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def revoke_tokens_for_access(self, session: AsyncSession, access_id: str) -> int:
        result = await session.execute(
            update(SSOTokenUsage)
            .where(SSOTokenUsage.access_id == access_id, SSOTokenUsage.status == "issued")
            .values(status="revoked")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("sso_tokens_revoked access_id=%s count=%s", access_id, result.rowcount)
        return int(result.rowcount or 0)

    async def expire_stale_tokens(self, session: AsyncSession, now: datetime | None = None) -> int:
        # Housekeeping; consume() enforces expiry on its own regardless of this sweep.
        cutoff = now or self._now()
        result = await session.execute(
            update(SSOTokenUsage)
            .where(SSOTokenUsage.status == "issued", SSOTokenUsage.expires_at <= cutoff)
            .values(status="expired")
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)
