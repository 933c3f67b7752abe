from __future__ import annotations

from typing import Any

from locally.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "Insufficient permissions"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    409: _response("Conflict", "CONFLICT", "Resource already exists"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}
