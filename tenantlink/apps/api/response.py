from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class PageMeta(ResponseMeta):
    limit: int
    offset: int
    returned: int


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class PageEnvelope(BaseModel, Generic[T]):
    data: list[T]
    meta: PageMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware normally assigns one; handlers outside it still get a stable id per request.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ResponseMeta(request_id=get_request_id(request)).model_dump()}


def page_response(*, request: Request, items: Sequence[Any], limit: int, offset: int) -> dict[str, Any]:
    meta = PageMeta(request_id=get_request_id(request), limit=limit, offset=offset, returned=len(items))
    return {"data": list(items), "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": ResponseMeta(request_id=get_request_id(request)).model_dump(),
    }
