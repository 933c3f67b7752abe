from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from locally.core.diagnostics import Diagnostics


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class DiagnosticsBody(BaseModel):
    """Client-safe rendering of a failed operation's Diagnostics."""

    operation: str
    kind: str | None = None
    summary: str
    entries: list[dict[str, Any]] = Field(default_factory=list)
    path: list[str] = Field(default_factory=list)

    @classmethod
    def from_diagnostics(cls, diag: Diagnostics) -> DiagnosticsBody:
        return cls.model_validate(diag.to_dict())


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    diagnostics: DiagnosticsBody | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    # The middleware assigns one per request; handlers reached without it mint their own.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    """Wrap ``data`` in the ``{data, meta}`` envelope on /v1 routes; unversioned routes get it bare."""
    if not is_versioned_request(request):
        return data
    meta = ResponseMeta(request_id=request_id_for(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    diagnostics: Diagnostics | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=request_id_for(request))
    error = ErrorDetail(
        code=code,
        message=message,
        details=details,
        diagnostics=DiagnosticsBody.from_diagnostics(diagnostics) if diagnostics is not None else None,
    )
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
