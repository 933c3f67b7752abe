from __future__ import annotations

from datetime import datetime
import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from locally.apps.api.deps import ADMIN, get_db, require_security
from locally.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from locally.apps.api.response import success_response
from locally.core.config import get_settings
from locally.domain.messages import MessagePriority
from locally.domain.models import Message, MessageEvent
from locally.persistence.query.builder import QueryBuilder
from locally.persistence.repos import messages as messages_repo
from locally.services.audit import record_message_event
from locally.services.auth.models import AuthClaims
from locally.services.messages.queue import notify_dispatch
from locally.services.messages.service import get_message_service


router = APIRouter(prefix="/messages", tags=["messages"], responses=DEFAULT_ERROR_RESPONSES)


class MessageCreateRequest(BaseModel):
    type: str = Field(min_length=1, max_length=200)
    payload: Any = None
    priority: int = Field(default=MessagePriority.NORMAL, ge=0)
    max_retries: int | None = Field(default=None, ge=0, le=100)
    scheduled_at: datetime | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _decode_payload(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _serialize(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "tenant_id": message.tenant_id,
        "type": message.type,
        "priority": message.priority,
        "payload": _decode_payload(message.payload),
        "status": message.status,
        "retry_count": message.retry_count,
        "max_retries": message.max_retries,
        "scheduled_at": _iso(message.scheduled_at),
        "processed_at": _iso(message.processed_at),
        "failed_at": _iso(message.failed_at),
        "error": message.error,
        "worker_name": message.worker_name,
        "created_at": _iso(message.created_at),
        "updated_at": _iso(message.updated_at),
    }


def _serialize_event(event: MessageEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "status": event.status,
        "worker_name": event.worker_name,
        "error": event.error,
        "metadata": event.metadata_json,
        "timestamp": _iso(event.timestamp),
    }


@router.post("", status_code=201)
async def enqueue_message(
    request: Request,
    payload: MessageCreateRequest,
    principal: AuthClaims = Depends(require_security(ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    message = await get_message_service().post_message(
        db,
        tenant_id=principal.tenant_id,
        message_type=payload.type,
        payload=payload.payload,
        priority=payload.priority,
        max_retries=payload.max_retries,
        scheduled_at=payload.scheduled_at,
    )
    await record_message_event(
        db,
        message=message,
        event_type="message.enqueued",
        actor_type="user",
        actor_id=principal.user_id,
        request=request,
    )
    await db.commit()
    # Wake the worker only once the row is visible to it.
    await notify_dispatch()
    return success_response(request=request, data=_serialize(message))


@router.get("")
async def list_messages(
    request: Request,
    principal: AuthClaims = Depends(require_security(ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    query = QueryBuilder.parse(request.url.query, default_page_size=get_settings().pagination_default_page_size)
    page = await messages_repo.list_messages(db, tenant_id=principal.tenant_id, query=query)
    return success_response(request=request, data=page.to_dict(_serialize))


@router.get("/stats")
async def message_stats(
    request: Request,
    principal: AuthClaims = Depends(require_security(ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Superusers see totals across every tenant.
    tenant_id = None if principal.is_superuser() else principal.tenant_id
    stats = await messages_repo.get_message_stats(db, tenant_id=tenant_id)
    return success_response(request=request, data={"tenant_id": tenant_id, "counts": stats})


@router.get("/{message_id}")
async def get_message(
    request: Request,
    message_id: str,
    principal: AuthClaims = Depends(require_security(ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    message = await messages_repo.get_message(db, tenant_id=principal.tenant_id, message_id=message_id)
    if message is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "MESSAGE_NOT_FOUND", "message": f"Message not found: {message_id}"},
        )
    events = await messages_repo.list_message_events(db, message_id=message.id)
    data = _serialize(message)
    data["events"] = [_serialize_event(event) for event in events]
    return success_response(request=request, data=data)
