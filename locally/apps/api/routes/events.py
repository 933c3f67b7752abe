from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from locally.apps.api.deps import AUTHENTICATED, get_current_claims, get_db, require_security
from locally.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from locally.apps.api.response import success_response
from locally.core.config import GLOBAL_TENANT_ID, get_settings
from locally.domain.events import EventType, parse_event_type
from locally.domain.security import SecurityLevel
from locally.persistence.repos import tenants as tenants_repo
from locally.services.auth.models import AuthClaims
from locally.services.events.service import get_event_service
from locally.services.events.sse import SSE_HEADERS, stream_events


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"], responses=DEFAULT_ERROR_RESPONSES)

# Tenant aliases that address every connected client.
_GLOBAL_ALIASES = frozenset({"", "global", "default", GLOBAL_TENANT_ID})


class PushEventRequest(BaseModel):
    type: str = Field(min_length=1)
    message: str
    tenant_id: str | None = None
    data: dict[str, Any] | None = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _target_tenant(db: AsyncSession, principal: AuthClaims, requested: str | None) -> str | None:
    # Subscribers register by tenant id, so slugs must resolve before publishing.
    if requested is None:
        return principal.tenant_id
    requested = requested.strip()
    if requested.lower() in _GLOBAL_ALIASES:
        return GLOBAL_TENANT_ID
    tenant = await tenants_repo.get_tenant_by_id_or_slug(db, requested)
    return tenant.id if tenant is not None else None


@router.get("/stream")
async def stream(request: Request) -> StreamingResponse:
    principal = await get_current_claims(request)
    service = get_event_service()
    service.ensure_started()
    logger.info(
        "sse_stream_opened tenant_id=%s username=%s",
        principal.tenant_id,
        principal.username,
    )
    generator = stream_events(
        request,
        hub=service.hub,
        tenant_id=principal.tenant_id,
        username=principal.username,
        heartbeat_s=get_settings().events_heartbeat_s,
    )
    return StreamingResponse(generator, media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/push")
async def push(
    request: Request,
    payload: PushEventRequest,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event_type = parse_event_type(payload.type)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_EVENT_TYPE", "message": f"Unsupported event type: {payload.type}"},
        ) from exc
    if event_type is EventType.CONNECTION_ESTABLISHED:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_EVENT_TYPE", "message": "Connection events are emitted by the server"},
        )

    tenant_id = await _target_tenant(db, principal, payload.tenant_id)
    if tenant_id != principal.tenant_id and not principal.is_superuser():
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_FORBIDDEN", "message": "Cannot publish to another tenant"},
        )
    if tenant_id is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "TENANT_NOT_FOUND", "message": f"Tenant not found: {payload.tenant_id}"},
        )

    data: dict[str, Any] = {"source": "api", "user": principal.username}
    data.update(payload.data or {})
    event = await get_event_service().publish_system(event_type, tenant_id, payload.message, data)
    return success_response(
        request=request,
        data={
            "success": True,
            "message": "Event published",
            "event_id": event.id,
            "tenant_id": tenant_id,
            "type": event_type.value,
            "timestamp": event.timestamp.isoformat(),
        },
    )


@router.get("/stats")
async def stats(
    request: Request,
    principal: AuthClaims = Depends(require_security(AUTHENTICATED)),
) -> dict:
    hub = get_event_service().hub
    payload: dict[str, Any] = {
        "connected_clients": hub.connected_clients(principal.tenant_id),
        "tenant_id": principal.tenant_id,
        "service_status": "active",
        "timestamp": _utc_now_iso(),
    }
    if principal.security_level.is_at_least(SecurityLevel.ADMIN):
        payload["all_tenant_connections"] = hub.stats()
    return success_response(request=request, data=payload)


@router.get("/health")
async def events_health(request: Request) -> dict:
    return success_response(
        request=request,
        data={"status": "healthy", "timestamp": _utc_now_iso(), "version": get_settings().app_version},
    )
