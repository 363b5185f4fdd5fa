from __future__ import annotations

from typing import Any

from tenantlink.core.errors import DriverConfigurationError, DriverSignupError, DriverTimeoutError
from tenantlink.domain.models import CompanyProjectAccess, Project, User
from tenantlink.providers.drivers.base import CallRecord, SignupResult
from tenantlink.providers.drivers.registry import DriverRegistry


class ScriptedDriver:
    """Driver double whose signup outcome is decided per project slug.

    Slugs listed in ``failing`` raise DriverSignupError, slugs in
    ``misconfigured`` raise DriverConfigurationError; everything else succeeds
    with external ids derived from the slug.
    """

    name = "scripted"

    def __init__(
        self,
        *,
        failing: set[str] | None = None,
        misconfigured: set[str] | None = None,
        revoke_raises: bool = False,
        sso_unavailable: bool = False,
    ) -> None:
        self.failing = set(failing or ())
        self.misconfigured = set(misconfigured or ())
        self.revoke_raises = revoke_raises
        self.sso_unavailable = sso_unavailable
        self.sso_calls = 0
        self.signup_calls: list[str] = []
        self.revoke_calls: list[str] = []

    async def signup(
        self,
        project: Project,
        company_data: dict[str, Any],
        user_data: dict[str, Any],
    ) -> SignupResult:
        self.signup_calls.append(project.slug)
        if project.slug in self.misconfigured:
            raise DriverConfigurationError(f"Project {project.slug} API configuration is incomplete")
        call = CallRecord(
            endpoint=f"https://{project.slug}.example.test/signup",
            method="POST",
            status_code=500 if project.slug in self.failing else 201,
            duration_ms=3,
        )
        if project.slug in self.failing:
            raise DriverSignupError(
                "API request failed: upstream unavailable",
                status_code=500,
                response_body="upstream unavailable",
                call=call,
            )
        return SignupResult(
            external_company_id=f"ext-co-{project.slug}",
            external_user_id=f"ext-user-{project.slug}",
            external_username=user_data.get("email"),
            credentials={"api_key": f"key-{project.slug}"},
            call=call,
        )

    async def resolve_sso_url(self, project: Project, access: CompanyProjectAccess, user: User) -> str:
        self.sso_calls += 1
        if self.sso_unavailable:
            raise DriverTimeoutError(f"Project {project.slug} SSO endpoint timed out")
        return f"https://{project.slug}.example.test/login"

    async def sync(self, project: Project, access: CompanyProjectAccess) -> dict[str, Any]:
        return {}

    async def revoke(self, project: Project, access: CompanyProjectAccess) -> bool:
        self.revoke_calls.append(project.slug)
        if self.revoke_raises:
            raise DriverSignupError("revoke endpoint unavailable", status_code=503)
        return True

    async def test_connection(self, project: Project) -> bool:
        return True


def scripted_registry(driver: ScriptedDriver) -> DriverRegistry:
    # Every project resolves to the same scripted instance.
    return DriverRegistry(fallback_factory=lambda: driver)
