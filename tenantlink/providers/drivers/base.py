from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from tenantlink.domain.models import CompanyProjectAccess, Project, User


@dataclass(frozen=True)
class CallRecord:
    # One outbound request; persisted to api_integration_logs, never with payloads.
    endpoint: str | None
    method: str
    status_code: int | None
    duration_ms: int
    error: str | None = None


@dataclass(frozen=True)
class SignupResult:
    external_company_id: str | None
    external_user_id: str | None
    external_username: str | None
    # Cleartext until the ledger encrypts it; never logged.
    credentials: dict[str, str] = field(default_factory=dict, repr=False)
    call: CallRecord | None = None


class IntegrationDriver(Protocol):
    name: str

    async def signup(
        self,
        project: Project,
        company_data: dict[str, Any],
        user_data: dict[str, Any],
    ) -> SignupResult:
        ...

    async def resolve_sso_url(
        self,
        project: Project,
        access: CompanyProjectAccess,
        user: User,
    ) -> str:
        ...

    async def sync(self, project: Project, access: CompanyProjectAccess) -> dict[str, Any]:
        ...

    async def revoke(self, project: Project, access: CompanyProjectAccess) -> bool:
        ...

    async def test_connection(self, project: Project) -> bool:
        ...
