from __future__ import annotations

from typing import Any


class TenantLinkError(Exception):
    """Base error for tenantlink."""


class ConfigurationError(TenantLinkError):
    """Missing or invalid configuration; never retried automatically."""


class DriverConfigurationError(ConfigurationError):
    """Project lacks the endpoints or credentials its driver needs."""


class InvalidTransitionError(TenantLinkError):
    """Requested status transition is not allowed from the current state."""


class IntegrationError(TenantLinkError):
    """Transient failure talking to an external project."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        call: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        # CallRecord describing the failed outbound request, when one was made.
        self.call = call


class DriverSignupError(IntegrationError):
    """External signup returned a non-2xx response or the transport failed."""


class DriverTimeoutError(IntegrationError):
    """External call exceeded its timeout."""


class SsoTokenError(TenantLinkError):
    """Security failure while validating an SSO token; always fatal to the request."""

    code = "SSO_TOKEN_INVALID"


class TokenInvalidError(SsoTokenError):
    code = "SSO_TOKEN_INVALID"


class TokenExpiredError(SsoTokenError):
    code = "SSO_TOKEN_EXPIRED"


class TokenUnknownError(SsoTokenError):
    code = "SSO_TOKEN_UNKNOWN"


class TokenReplayError(SsoTokenError):
    code = "SSO_TOKEN_REPLAYED"


class TokenRevokedError(SsoTokenError):
    code = "SSO_TOKEN_REVOKED"
