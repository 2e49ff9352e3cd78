from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class Pagination(BaseModel):
    # Offset paging as applied by the listing query; ``returned`` < ``limit`` means the last page.
    offset: int
    limit: int
    returned: int


class ResponseMeta(BaseModel):
    """Per-response metadata echoed to operators for log correlation."""

    request_id: str
    api_version: str = Field(default=API_VERSION)
    pagination: Pagination | None = None


class ErrorDetail(BaseModel):
    # ``code`` is the stable machine value (ENDPOINT_NOT_FOUND, DELIVERY_INVALID_STATE, ...).
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware normally sets this; handlers reached without it still get a stable id.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request, pagination: Pagination | None = None) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request), pagination=pagination).model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any, pagination: Pagination | None = None) -> dict[str, Any]:
    """Wrap operator API payloads as ``{data, meta}``.

    Every route under ``/v1`` is enveloped; there are no unversioned routes.
    """
    return {"data": data, "meta": _meta(request, pagination)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
