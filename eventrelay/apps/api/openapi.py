from __future__ import annotations

from typing import Any

from eventrelay.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response(
        "Conflict",
        code="DELIVERY_INVALID_STATE",
        message="only dead_letter deliveries can be requeued",
    ),
    422: _response("Validation error", code="VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Service unavailable", code="SECRET_UNAVAILABLE", message="Signing key unavailable"),
}
