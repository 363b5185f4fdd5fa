from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantlink.apps.api.response import error_response, is_versioned_request
from tenantlink.core.errors import (
    ConfigurationError,
    IntegrationError,
    InvalidTransitionError,
    SsoTokenError,
    TenantLinkError,
)
from tenantlink.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "INTEGRATION_FAILED",
    503: "SERVICE_UNAVAILABLE",
}

# Checked in order; subclasses must precede their bases.
_DOMAIN_STATUS: tuple[tuple[type[TenantLinkError], int, str | None], ...] = (
    (SsoTokenError, status.HTTP_401_UNAUTHORIZED, None),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "PROJECT_MISCONFIGURED"),
    (IntegrationError, status.HTTP_502_BAD_GATEWAY, "INTEGRATION_FAILED"),
)


def _code_message_details(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    fallback = _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, str):
        return fallback, detail, None
    if not isinstance(detail, dict):
        return fallback, "Request failed", None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None


def error_json(
    request: Request,
    status_code: int,
    detail: Any,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # Unversioned paths keep FastAPI's plain {"detail": ...} body.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": detail}, status_code=status_code, headers=headers)
    code, message, details = _code_message_details(detail, status_code)
    body = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=body, status_code=status_code, headers=headers)


def domain_http_exception(exc: Exception) -> HTTPException:
    """Map a domain error onto the HTTP status and error code clients see.

    SSO token errors carry their own code. Integration failures never expose
    the partner's response text. Anything unmapped is re-raised.
    """
    for error_type, status_code, code in _DOMAIN_STATUS:
        if not isinstance(exc, error_type):
            continue
        if isinstance(exc, SsoTokenError):
            return HTTPException(status_code, detail={"code": exc.code, "message": str(exc) or "SSO token rejected"})
        if isinstance(exc, IntegrationError):
            return HTTPException(status_code, detail={"code": code, "message": "External project call failed"})
        return HTTPException(status_code, detail={"code": code, "message": str(exc)})
    raise exc


async def _on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_json(request, exc.status_code, exc.detail, exc.headers)


async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    body = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=body, status_code=422)


async def _on_domain_error(request: Request, exc: TenantLinkError) -> JSONResponse:
    mapped = domain_http_exception(exc)
    return error_json(request, mapped.status_code, mapped.detail, mapped.headers)


async def _on_missing_tenant_predicate(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s message=%s", request.url.path, exc.message)
    return error_json(
        request,
        500,
        {"code": "TENANT_PREDICATE_REQUIRED", "message": "Company scope missing for data access"},
    )


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return error_json(request, 500, {"code": "INTERNAL_ERROR", "message": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _on_http_error)
    app.add_exception_handler(HTTPException, _on_http_error)
    app.add_exception_handler(RequestValidationError, _on_validation_error)
    app.add_exception_handler(TenantPredicateError, _on_missing_tenant_predicate)
    app.add_exception_handler(TenantLinkError, _on_domain_error)
    app.add_exception_handler(Exception, _on_unhandled)
