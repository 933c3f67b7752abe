"""Audit trail for authentication attempts, API-key changes and message lifecycle.

Rows join the caller's unit of work. A failed audit write is logged and never
fails the operation being audited.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from locally.core.diagnostics import Diagnostics
from locally.domain.models import ApiKey, AuditEvent, Message
from locally.services.auth.models import AuthType, TokenResponse


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
_CREDENTIAL_MARKERS = ("api_key", "authorization", "token", "secret", "password")
_REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    # Credential-looking keys are masked at any depth; the shape is kept.
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if any(marker in str(key).lower() for marker in _CREDENTIAL_MARKERS) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def _client_context(request: Request | None) -> tuple[str | None, str | None, str | None]:
    if request is None:
        return None, None, None
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    return request_id, ip_address, request.headers.get("user-agent")


async def _write(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str,
    resource_id: str | None,
    request: Request | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
) -> None:
    request_id, ip_address, user_agent = _client_context(request)
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        session.add(event)
        if commit:
            await session.commit()
        else:
            await session.flush()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning("audit_event_write_failed event_type=%s request_id=%s", event_type, request_id, exc_info=exc)


async def record_auth_attempt(
    session: AsyncSession,
    *,
    request: Request | None,
    event_type: str,
    auth_type: AuthType,
    response: TokenResponse,
    diag: Diagnostics,
) -> None:
    """Commit one audit row per login or refresh.

    Callers only ever see a uniform 401; the precise reason, the failing
    operation chain and the error kind are kept here.
    """
    first = diag.first_error()
    metadata: dict[str, Any] = {"username": response.username, "auth_type": auth_type.value}
    if first is not None:
        metadata["reason"] = first.message
        metadata["failure"] = {"operation": diag.name, "kind": first.kind.value, "path": list(diag.path)}
    if auth_type is AuthType.API_KEY:
        actor_type, actor_id = "api_key", response.api_key_id
    else:
        actor_type, actor_id = "user", response.user_id
    await _write(
        session,
        tenant_id=response.tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome="failure" if first else "success",
        resource_type="user",
        resource_id=response.user_id,
        request=request,
        metadata=metadata,
        error_code=first.code if first else None,
        commit=True,
    )


async def record_api_key_event(
    session: AsyncSession,
    *,
    api_key: ApiKey,
    event_type: str,
    actor_type: str,
    actor_id: str | None,
    request: Request | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    details: dict[str, Any] = {"key_name": api_key.name, "key_prefix": api_key.key_prefix, "owner": api_key.user_id}
    details.update(metadata or {})
    await _write(
        session,
        tenant_id=api_key.tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome="success",
        resource_type="api_key",
        resource_id=api_key.id,
        request=request,
        metadata=details,
    )


async def record_message_event(
    session: AsyncSession,
    *,
    message: Message,
    event_type: str,
    outcome: str = "success",
    actor_type: str = SYSTEM_ACTOR,
    actor_id: str | None = None,
    request: Request | None = None,
    error_code: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    # Enqueue and terminal outcomes only; per-attempt history lives in message_events.
    details: dict[str, Any] = {
        "type": message.type,
        "status": message.status,
        "priority": message.priority,
        "retry_count": message.retry_count,
    }
    if message.error:
        details["error"] = message.error
    details.update(metadata or {})
    await _write(
        session,
        tenant_id=message.tenant_id,
        actor_type=actor_type,
        actor_id=actor_id or message.worker_name,
        event_type=event_type,
        outcome=outcome,
        resource_type="message",
        resource_id=message.id,
        request=request,
        metadata=details,
        error_code=error_code,
    )


async def record_recovery(session: AsyncSession, *, event_type: str, counts: dict[str, int]) -> None:
    # System-wide sweeps have no tenant.
    await _write(
        session,
        tenant_id=None,
        actor_type=SYSTEM_ACTOR,
        actor_id="message-service",
        event_type=event_type,
        outcome="success",
        resource_type="message",
        resource_id=None,
        metadata=dict(counts),
    )
