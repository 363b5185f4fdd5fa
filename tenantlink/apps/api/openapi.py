from __future__ import annotations

from typing import Any

from tenantlink.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Super admin access required"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Project not found")),
    409: _response(
        "Conflict",
        _error_example(code="INVALID_TRANSITION", message="Signup request is approved, not pending"),
    ),
    422: _response(
        "Validation error",
        _error_example(
            code="REQUEST_VALIDATION_ERROR",
            message="Validation error",
            details={"errors": [{"loc": ["body", "slug"], "msg": "Field required"}]},
        ),
    ),
    500: _response("Internal error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
}

RATE_LIMITED_RESPONSE: dict[int, dict[str, Any]] = {
    429: _response(
        "Admission denied by the per-access rate limiter or circuit breaker",
        _error_example(
            code="RATE_LIMITED",
            message="Access temporarily throttled",
            details={"reason": "rate_limited_minute", "retry_after_s": 42},
        ),
    ),
}

SSO_TOKEN_ERROR_RESPONSE: dict[int, dict[str, Any]] = {
    401: _response(
        "SSO token rejected",
        _error_example(code="SSO_TOKEN_REPLAYED", message="Token already used"),
    ),
}
