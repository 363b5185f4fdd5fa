from __future__ import annotations

import json
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from tenantlink.apps.api.errors import register_exception_handlers
from tenantlink.apps.api.response import API_VERSION, is_versioned_request
from tenantlink.apps.api.routes.access_admin import router as access_admin_router
from tenantlink.apps.api.routes.health import router as health_router
from tenantlink.apps.api.routes.ops import router as ops_router
from tenantlink.apps.api.routes.projects import router as projects_router
from tenantlink.apps.api.routes.signup_requests import router as signup_requests_router
from tenantlink.apps.api.routes.sso import router as sso_router
from tenantlink.core.logging import configure_logging
from tenantlink.services.telemetry import increment_counter


APP_TITLE = "TenantLink API"
_V1_ROUTERS = (
    health_router,
    signup_requests_router,
    projects_router,
    sso_router,
    access_admin_router,
    ops_router,
)
_DOC_PATHS = ("/v1/openapi.json", "/v1/docs")
# Reachable without a bearer token; everything else is marked BearerAuth in the schema.
_PUBLIC_PATHS = frozenset(
    {
        "/v1/health",
        "/v1/signup-requests",
        "/v1/projects/{slug}/sso/consume",
    }
)


def _already_enveloped(payload: Any) -> bool:
    return (
        isinstance(payload, dict)
        and "data" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )


def _ensure_envelope(response: Response, request_id: str) -> Response:
    body = getattr(response, "body", None)
    if not body:
        return response
    try:
        payload = json.loads(body)
    except ValueError:
        return response
    if _already_enveloped(payload):
        return response
    wrapped = JSONResponse(
        content={"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}},
        status_code=response.status_code,
    )
    for name, value in response.headers.items():
        if name.lower() not in ("content-length", "content-type"):
            wrapped.headers[name] = value
    return wrapped


def _needs_envelope(request: Request, response: Response) -> bool:
    return (
        is_versioned_request(request)
        and not request.url.path.startswith(_DOC_PATHS)
        and response.status_code < 400
        and response.media_type == "application/json"
    )


def _build_openapi_schema(app: FastAPI) -> dict[str, Any]:
    schema = get_openapi(title=APP_TITLE, version=API_VERSION, routes=app.routes)
    schema.setdefault("components", {}).setdefault("securitySchemes", {})["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
    }
    for path, operations in schema.get("paths", {}).items():
        if path in _PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation.setdefault("security", [{"BearerAuth": []}])
    return schema


def _mount_docs(app: FastAPI) -> None:
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title=f"{APP_TITLE} v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def openapi() -> dict[str, Any]:
        if app.openapi_schema is None:
            app.openapi_schema = _build_openapi_schema(app)
        return app.openapi_schema

    app.openapi = openapi  # type: ignore[method-assign]


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=APP_TITLE, docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        increment_counter(f"http_requests_total.{response.status_code // 100}xx")
        if _needs_envelope(request, response):
            response = _ensure_envelope(response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers["X-Response-Time-Ms"] = f"{(time.monotonic() - started) * 1000.0:.1f}"
        return response

    register_exception_handlers(app)
    for router in _V1_ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    _mount_docs(app)
    return app


app = create_app()
