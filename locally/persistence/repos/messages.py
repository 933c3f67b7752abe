from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from locally.domain.messages import MessageEventType, MessageStatus
from locally.domain.models import Message, MessageEvent, Worker
from locally.persistence.guards import require_tenant_id, tenant_predicate
from locally.persistence.query.builder import Page, QueryBuilder, columns_for


LIST_COLUMNS = ("type", "status", "priority", "retry_count", "worker_name", "created_at", "scheduled_at", "processed_at")
RECOVERED_ERROR = "Recovered from orphaned processing state"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_message_event(
    session: AsyncSession,
    *,
    message_id: str,
    event_type: MessageEventType,
    status: MessageStatus | str,
    worker_name: str | None = None,
    error: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> MessageEvent:
    event = MessageEvent(
        message_id=message_id,
        event_type=event_type.value,
        status=MessageStatus(status).value,
        worker_name=worker_name,
        error=error,
        metadata_json=metadata,
        timestamp=_utc_now(),
    )
    session.add(event)
    await session.flush()
    return event


async def list_message_events(session: AsyncSession, *, message_id: str) -> list[MessageEvent]:
    result = await session.execute(
        select(MessageEvent).where(MessageEvent.message_id == message_id).order_by(MessageEvent.timestamp, MessageEvent.id)
    )
    return list(result.scalars().all())


async def create_message(
    session: AsyncSession,
    *,
    tenant_id: str,
    message_type: str,
    payload: str | None,
    priority: int,
    max_retries: int,
    scheduled_at: datetime | None = None,
) -> Message:
    require_tenant_id(tenant_id, scope="messages")
    now = _utc_now()
    message = Message(
        tenant_id=tenant_id,
        type=message_type,
        payload=payload,
        priority=int(priority),
        status=MessageStatus.PENDING.value,
        retry_count=0,
        max_retries=max(0, int(max_retries)),
        scheduled_at=scheduled_at,
        created_at=now,
        updated_at=now,
    )
    session.add(message)
    await session.flush()
    await create_message_event(
        session,
        message_id=message.id,
        event_type=MessageEventType.CREATED,
        status=MessageStatus.PENDING,
        metadata={"type": message_type, "priority": message.priority},
    )
    return message


async def get_message(session: AsyncSession, *, tenant_id: str, message_id: str) -> Message | None:
    result = await session.execute(
        select(Message).where(tenant_predicate(Message, tenant_id), Message.id == message_id)
    )
    return result.scalar_one_or_none()


async def get_message_by_id(session: AsyncSession, message_id: str) -> Message | None:
    # Dispatcher and recovery paths operate across tenants.
    return await session.get(Message, message_id)


async def list_messages(
    session: AsyncSession,
    *,
    tenant_id: str,
    query: QueryBuilder | None = None,
) -> Page[Message]:
    stmt = select(Message).where(tenant_predicate(Message, tenant_id))
    builder = query or QueryBuilder.parse(None)
    return await builder.paginate(session, stmt, columns_for(Message, *LIST_COLUMNS))


async def promote_due_retries(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Retrying messages whose backoff has elapsed become dispatchable again.
    now = now or _utc_now()
    result = await session.execute(
        update(Message)
        .where(
            Message.status == MessageStatus.RETRYING.value,
            or_(Message.scheduled_at.is_(None), Message.scheduled_at <= now),
        )
        .values(status=MessageStatus.PENDING.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def get_pending_messages(
    session: AsyncSession,
    *,
    limit: int,
    now: datetime | None = None,
) -> list[Message]:
    now = now or _utc_now()
    result = await session.execute(
        select(Message)
        .where(
            Message.status == MessageStatus.PENDING.value,
            or_(Message.scheduled_at.is_(None), Message.scheduled_at <= now),
        )
        .order_by(Message.priority.desc(), Message.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_processing(session: AsyncSession, *, message: Message, worker_name: str) -> Message:
    message.status = MessageStatus.PROCESSING.value
    message.worker_name = worker_name
    message.updated_at = _utc_now()
    await session.flush()
    await create_message_event(
        session,
        message_id=message.id,
        event_type=MessageEventType.PROCESSING,
        status=MessageStatus.PROCESSING,
        worker_name=worker_name,
    )
    return message


async def complete_message(session: AsyncSession, *, message: Message) -> Message:
    now = _utc_now()
    message.status = MessageStatus.COMPLETED.value
    message.processed_at = now
    message.error = None
    message.updated_at = now
    await session.flush()
    await create_message_event(
        session,
        message_id=message.id,
        event_type=MessageEventType.COMPLETED,
        status=MessageStatus.COMPLETED,
        worker_name=message.worker_name,
    )
    return message


async def fail_message(
    session: AsyncSession,
    *,
    message: Message,
    error: str,
    backoff_base_s: int,
    retryable: bool = True,
) -> Message:
    """Record a failed attempt.

    While retries remain the count is incremented and the message is scheduled
    again after a linear backoff of ``retry_count * backoff_base_s`` seconds.
    Once ``retry_count`` has reached ``max_retries`` the next failure is
    terminal, so a message with ``max_retries=N`` fails on attempt ``N + 1``.
    """
    now = _utc_now()
    message.error = error
    message.updated_at = now
    if retryable and message.retry_count < message.max_retries:
        message.retry_count += 1
        message.status = MessageStatus.RETRYING.value
        message.scheduled_at = now + timedelta(seconds=message.retry_count * backoff_base_s)
        event_type = MessageEventType.RETRYING
    else:
        message.status = MessageStatus.FAILED.value
        message.processed_at = now
        message.failed_at = now
        event_type = MessageEventType.FAILED
    await session.flush()
    await create_message_event(
        session,
        message_id=message.id,
        event_type=event_type,
        status=message.status,
        worker_name=message.worker_name,
        error=error,
        metadata={"retry_count": message.retry_count, "max_retries": message.max_retries},
    )
    return message


async def _ids(session: AsyncSession, *conditions: Any) -> list[str]:
    result = await session.execute(select(Message.id).where(*conditions))
    return list(result.scalars().all())


async def _journal(
    session: AsyncSession,
    ids: Iterable[str],
    event_type: MessageEventType,
    status: MessageStatus,
    error: str | None = None,
) -> None:
    for message_id in ids:
        await create_message_event(
            session,
            message_id=message_id,
            event_type=event_type,
            status=status,
            error=error,
        )


async def recover_orphaned(session: AsyncSession, *, max_age_s: int) -> int:
    # Processing rows not touched within max_age_s belong to a dead dispatcher.
    now = _utc_now()
    cutoff = now - timedelta(seconds=max_age_s)
    ids = await _ids(
        session,
        Message.status == MessageStatus.PROCESSING.value,
        Message.updated_at < cutoff,
    )
    if not ids:
        return 0
    await session.execute(
        update(Message)
        .where(Message.id.in_(ids))
        .values(status=MessageStatus.PENDING.value, worker_name=None, error=RECOVERED_ERROR, updated_at=now)
    )
    await _journal(session, ids, MessageEventType.RECOVERED, MessageStatus.PENDING, RECOVERED_ERROR)
    return len(ids)


async def reset_stuck_retrying(session: AsyncSession, *, max_age_s: int) -> int:
    now = _utc_now()
    cutoff = now - timedelta(seconds=max_age_s)
    ids = await _ids(
        session,
        Message.status == MessageStatus.RETRYING.value,
        or_(Message.scheduled_at.is_(None), Message.scheduled_at < cutoff),
    )
    if not ids:
        return 0
    await session.execute(
        update(Message)
        .where(Message.id.in_(ids))
        .values(status=MessageStatus.PENDING.value, scheduled_at=None, updated_at=now)
    )
    await _journal(session, ids, MessageEventType.RECOVERED, MessageStatus.PENDING)
    return len(ids)


async def startup_recovery(session: AsyncSession) -> dict[str, int]:
    """Reconcile in-flight rows left behind by a previous process.

    Processing rows go back to pending, retrying rows with retries left go
    back to pending, and retrying rows that exhausted their retries become
    abandoned.
    """
    now = _utc_now()
    processing = await _ids(session, Message.status == MessageStatus.PROCESSING.value)
    retryable = await _ids(
        session,
        Message.status == MessageStatus.RETRYING.value,
        Message.retry_count < Message.max_retries,
    )
    exhausted = await _ids(
        session,
        Message.status == MessageStatus.RETRYING.value,
        Message.retry_count >= Message.max_retries,
    )
    if processing:
        await session.execute(
            update(Message)
            .where(Message.id.in_(processing))
            .values(status=MessageStatus.PENDING.value, worker_name=None, updated_at=now)
        )
        await _journal(session, processing, MessageEventType.RECOVERED, MessageStatus.PENDING)
    if retryable:
        await session.execute(
            update(Message)
            .where(Message.id.in_(retryable))
            .values(status=MessageStatus.PENDING.value, updated_at=now)
        )
        await _journal(session, retryable, MessageEventType.RECOVERED, MessageStatus.PENDING)
    if exhausted:
        await session.execute(
            update(Message)
            .where(Message.id.in_(exhausted))
            .values(status=MessageStatus.ABANDONED.value, processed_at=now, updated_at=now)
        )
        await _journal(session, exhausted, MessageEventType.ABANDONED, MessageStatus.ABANDONED)
    return {"processing": len(processing), "retrying": len(retryable), "abandoned": len(exhausted)}


async def _delete_messages(session: AsyncSession, ids: list[str]) -> int:
    if not ids:
        return 0
    await session.execute(delete(MessageEvent).where(MessageEvent.message_id.in_(ids)))
    result = await session.execute(delete(Message).where(Message.id.in_(ids)))
    return result.rowcount or 0


async def cleanup_old_messages(session: AsyncSession, *, max_age_s: int) -> int:
    cutoff = _utc_now() - timedelta(seconds=max_age_s)
    ids = await _ids(
        session,
        Message.status.in_([MessageStatus.COMPLETED.value, MessageStatus.FAILED.value]),
        Message.processed_at < cutoff,
    )
    return await _delete_messages(session, ids)


async def cleanup_old_abandoned(session: AsyncSession, *, max_age_s: int) -> int:
    cutoff = _utc_now() - timedelta(seconds=max_age_s)
    ids = await _ids(
        session,
        Message.status == MessageStatus.ABANDONED.value,
        Message.updated_at < cutoff,
    )
    return await _delete_messages(session, ids)


async def cleanup_old_events(session: AsyncSession, *, max_age_s: int) -> int:
    cutoff = _utc_now() - timedelta(seconds=max_age_s)
    result = await session.execute(delete(MessageEvent).where(MessageEvent.timestamp < cutoff))
    return result.rowcount or 0


async def get_message_stats(session: AsyncSession, *, tenant_id: str | None = None) -> dict[str, int]:
    stmt = select(Message.status, func.count()).group_by(Message.status)
    if tenant_id is not None:
        stmt = stmt.where(tenant_predicate(Message, tenant_id))
    rows = (await session.execute(stmt)).all()
    stats = {status.value: 0 for status in MessageStatus}
    for status, count in rows:
        stats[status] = int(count)
    stats["total"] = sum(stats[status.value] for status in MessageStatus)
    return stats


async def get_worker(session: AsyncSession, *, name: str) -> Worker | None:
    result = await session.execute(select(Worker).where(Worker.name == name))
    return result.scalar_one_or_none()


async def upsert_worker(
    session: AsyncSession,
    *,
    name: str,
    message_type: str,
    description: str | None = None,
    version: str | None = None,
    enabled: bool = True,
) -> Worker:
    now = _utc_now()
    worker = await get_worker(session, name=name)
    if worker is None:
        worker = Worker(name=name, message_type=message_type, created_at=now)
        session.add(worker)
    worker.message_type = message_type
    worker.description = description
    worker.version = version
    worker.enabled = enabled
    worker.updated_at = now
    await session.flush()
    return worker


async def update_worker_status(session: AsyncSession, *, name: str, is_running: bool) -> bool:
    now = _utc_now()
    result = await session.execute(
        update(Worker).where(Worker.name == name).values(is_running=is_running, last_seen=now, updated_at=now)
    )
    return (result.rowcount or 0) > 0


async def list_workers(session: AsyncSession) -> list[Worker]:
    result = await session.execute(select(Worker).order_by(Worker.name))
    return list(result.scalars().all())


async def delete_worker(session: AsyncSession, *, name: str) -> bool:
    result = await session.execute(delete(Worker).where(Worker.name == name))
    return (result.rowcount or 0) > 0
