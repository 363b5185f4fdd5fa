from __future__ import annotations

import base64
import logging
import time
from typing import Any

import httpx

from tenantlink.core.config import get_settings
from tenantlink.core.errors import DriverConfigurationError, DriverSignupError, DriverTimeoutError
from tenantlink.domain.models import CompanyProjectAccess, Project, User
from tenantlink.providers.drivers.base import CallRecord, SignupResult
from tenantlink.services.crypto.secrets import decrypt_optional
from tenantlink.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

# Keep diagnostics bounded; external error pages can be large.
_MAX_ERROR_BODY_CHARS = 2000


def build_url(base_url: str, endpoint: str) -> str:
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def build_auth_headers(project: Project) -> dict[str, str]:
    # Secrets are decrypted here and only live for the duration of the call.
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    auth_type = (project.api_auth_type or "bearer").lower()
    if auth_type == "bearer":
        api_key = decrypt_optional(project.api_key)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
    elif auth_type == "basic":
        api_key = decrypt_optional(project.api_key)
        api_secret = decrypt_optional(project.api_secret)
        if api_key and api_secret:
            token = base64.b64encode(f"{api_key}:{api_secret}".encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {token}"
    # oauth2 and custom projects authenticate through a dedicated driver.
    return headers


def _first_present(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return str(value)
    return None


class GenericDriver:
    name = "generic"

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        signup_timeout_s: float | None = None,
        probe_timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        # Allow injecting a transport for deterministic tests.
        self._transport = transport
        self._signup_timeout_s = signup_timeout_s or settings.driver_signup_timeout_s
        self._probe_timeout_s = probe_timeout_s or settings.driver_probe_timeout_s
        self._source = settings.driver_source_name

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def signup(
        self,
        project: Project,
        company_data: dict[str, Any],
        user_data: dict[str, Any],
    ) -> SignupResult:
        if not project.api_base_url or not project.api_signup_endpoint:
            raise DriverConfigurationError(f"Project {project.slug} API configuration is incomplete")

        url = build_url(project.api_base_url, project.api_signup_endpoint)
        payload = {"company": company_data, "user": user_data, "source": self._source}
        integration = f"project.{project.slug}.signup"
        start = time.monotonic()

        def _call_record(status_code: int | None, error: str | None) -> CallRecord:
            return CallRecord(
                endpoint=url,
                method="POST",
                status_code=status_code,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=error,
            )

        try:
            async with self._client(self._signup_timeout_s) as client:
                response = await client.post(url, json=payload, headers=build_auth_headers(project))
        except httpx.TimeoutException as exc:
            call = _call_record(None, "timeout")
            record_external_call(integration=integration, latency_ms=call.duration_ms, success=False)
            logger.warning("driver_signup_timeout project_id=%s", project.id)
            raise DriverTimeoutError(
                f"API request timed out after {self._signup_timeout_s:g}s", call=call
            ) from exc
        except httpx.HTTPError as exc:
            call = _call_record(None, str(exc) or exc.__class__.__name__)
            record_external_call(integration=integration, latency_ms=call.duration_ms, success=False)
            logger.warning("driver_signup_transport_failed project_id=%s", project.id, exc_info=exc)
            raise DriverSignupError(f"API request failed: {call.error}", call=call) from exc

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY_CHARS]
            call = _call_record(response.status_code, body)
            record_external_call(integration=integration, latency_ms=call.duration_ms, success=False)
            logger.error(
                "driver_signup_failed project_id=%s status=%s", project.id, response.status_code
            )
            raise DriverSignupError(
                f"API request failed: {body}",
                status_code=response.status_code,
                response_body=body,
                call=call,
            )

        call = _call_record(response.status_code, None)
        record_external_call(integration=integration, latency_ms=call.duration_ms, success=True)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        credentials = {
            name: str(data[name])
            for name in ("api_key", "api_secret")
            if data.get(name) is not None and data.get(name) != ""
        }
        return SignupResult(
            external_company_id=_first_present(data, "company_id", "organization_id"),
            external_user_id=_first_present(data, "user_id", "admin_id"),
            external_username=_first_present(data, "username") or user_data.get("email"),
            credentials=credentials,
            call=call,
        )

    async def resolve_sso_url(
        self,
        project: Project,
        access: CompanyProjectAccess,
        user: User,
    ) -> str:
        # Fallback entry point when the project does not consume platform SSO tokens.
        return project.sso_redirect_url or project.admin_panel_url or ""

    async def sync(self, project: Project, access: CompanyProjectAccess) -> dict[str, Any]:
        return {}

    async def revoke(self, project: Project, access: CompanyProjectAccess) -> bool:
        return True

    async def test_connection(self, project: Project) -> bool:
        # Connectivity probe; never raises.
        if not project.api_base_url:
            return False
        start = time.monotonic()
        try:
            async with self._client(self._probe_timeout_s) as client:
                response = await client.get(project.api_base_url)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=f"project.{project.slug}.probe",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.info("driver_probe_failed project_id=%s error=%s", project.id, exc.__class__.__name__)
            return False
        record_external_call(
            integration=f"project.{project.slug}.probe",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.is_success,
        )
        return response.is_success
