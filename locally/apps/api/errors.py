from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from locally.apps.api.response import error_response, is_versioned_request
from locally.core.diagnostics import Diagnostics, ErrorKind
from locally.core.errors import DiagnosticsError, QueryParseError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INPUT: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.DEPENDENCY: 500,
    ErrorKind.FATAL: 500,
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def diagnostics_status(diag: Diagnostics) -> int:
    return KIND_STATUS.get(diag.kind() or ErrorKind.DEPENDENCY, 500)


def diagnostics_exception(diag: Diagnostics, *, status_code: int | None = None) -> DiagnosticsError:
    """Wrap a failed ``Diagnostics`` so the envelope handler renders it; status follows the first error's kind."""
    return DiagnosticsError(diag, status_code=status_code or diagnostics_status(diag))


async def diagnostics_exception_handler(request: Request, exc: DiagnosticsError) -> JSONResponse:
    diag = exc.diagnostics
    status_code = exc.status_code or diagnostics_status(diag)
    first = diag.first_error()
    if status_code >= 500 or first is None:
        # Dependency failures are logged in full but never echoed to callers.
        logger.error("request_failed path=%s %s", request.url.path, diag.summary())
        status_code = max(status_code, 500)
        code, message, details, body = "INTERNAL_ERROR", "Internal server error", None, None
    else:
        code, message, details, body = first.code.upper(), first.message, first.details, diag
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": code, "message": message}}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details, diagnostics=body)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed bodies are input errors and answer 400.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=400)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=jsonable_encoder(payload), status_code=400)


async def query_parse_exception_handler(request: Request, exc: QueryParseError) -> JSONResponse:
    payload = error_response(request=request, code="INVALID_QUERY", message=str(exc))
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
