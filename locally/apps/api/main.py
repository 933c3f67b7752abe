from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from locally.apps.api.errors import (
    diagnostics_exception_handler,
    http_exception_handler,
    query_parse_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from locally.apps.api.response import API_VERSION
from locally.apps.api.routes.api_keys import router as api_keys_router
from locally.apps.api.routes.auth import router as auth_router
from locally.apps.api.routes.events import router as events_router
from locally.apps.api.routes.health import router as health_router
from locally.apps.api.routes.messages import router as messages_router
from locally.core.config import get_settings
from locally.core.errors import DiagnosticsError, QueryParseError
from locally.core.logging import configure_logging
from locally.persistence.db import create_all, get_session
from locally.services.events.service import get_event_service
from locally.services.seed import seed_defaults


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    if settings.db_create_all:
        await create_all()
    if settings.seed_on_startup:
        async with get_session() as session:
            diag = await seed_defaults(session)
        for warning in diag.warnings:
            logger.warning("seed_warning code=%s message=%s", warning.code, warning.message)
    event_service = get_event_service()
    event_service.ensure_started()
    logger.info("api_started app=%s version=%s", settings.app_name, settings.app_version)
    try:
        yield
    finally:
        await event_service.stop()
        logger.info("api_stopped")


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Locally API", version=settings.app_version, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(QueryParseError)
    async def _query_parse_exception_handler(request: Request, exc: QueryParseError):
        return await query_parse_exception_handler(request, exc)

    @app.exception_handler(DiagnosticsError)
    async def _diagnostics_exception_handler(request: Request, exc: DiagnosticsError):
        return await diagnostics_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(api_keys_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(messages_router, prefix=f"/{API_VERSION}")
    # Unversioned liveness check for load balancers.
    app.include_router(health_router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Locally API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema for every non-public route.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Locally API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_paths = {
            "/v1/health",
            "/v1/auth/login",
            "/v1/auth/login/api-key",
            "/v1/auth/refresh",
            "/v1/events/health",
        }
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
