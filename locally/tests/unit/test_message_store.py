from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from locally.domain.messages import MessageEventType, MessageStatus
from locally.persistence.db import SessionLocal
from locally.persistence.repos import messages as messages_repo


TENANT = "tenant-a"


async def _create(session, *, max_retries: int = 2, priority: int = 1, tenant_id: str = TENANT):
    return await messages_repo.create_message(
        session,
        tenant_id=tenant_id,
        message_type="email",
        payload='{"to": "a@b"}',
        priority=priority,
        max_retries=max_retries,
    )


@pytest.mark.asyncio
async def test_fail_retries_then_terminates_after_n_plus_one() -> None:
    async with SessionLocal() as session:
        message = await _create(session, max_retries=2)
        for attempt in range(1, 3):
            await messages_repo.fail_message(session, message=message, error="boom", backoff_base_s=60)
            assert message.status == MessageStatus.RETRYING.value
            assert message.retry_count == attempt
            assert message.processed_at is None
        assert message.scheduled_at is not None

        await messages_repo.fail_message(session, message=message, error="boom", backoff_base_s=60)
        assert message.status == MessageStatus.FAILED.value
        assert message.retry_count == 2
        assert message.processed_at is not None
        assert message.failed_at is not None
        await session.commit()

        events = await messages_repo.list_message_events(session, message_id=message.id)
        assert [event.event_type for event in events] == [
            MessageEventType.CREATED.value,
            MessageEventType.RETRYING.value,
            MessageEventType.RETRYING.value,
            MessageEventType.FAILED.value,
        ]


@pytest.mark.asyncio
async def test_backoff_grows_linearly() -> None:
    async with SessionLocal() as session:
        message = await _create(session, max_retries=3)
        before = datetime.now(timezone.utc)
        await messages_repo.fail_message(session, message=message, error="boom", backoff_base_s=60)
        first = message.scheduled_at
        await messages_repo.fail_message(session, message=message, error="boom", backoff_base_s=60)
        second = message.scheduled_at
        assert first >= before + timedelta(seconds=60)
        assert second >= before + timedelta(seconds=120)
        assert second < before + timedelta(seconds=180)


@pytest.mark.asyncio
async def test_zero_retries_fails_on_first_error() -> None:
    async with SessionLocal() as session:
        message = await _create(session, max_retries=0)
        await messages_repo.fail_message(session, message=message, error="boom", backoff_base_s=60)
        assert message.status == MessageStatus.FAILED.value
        assert message.retry_count == 0


@pytest.mark.asyncio
async def test_pending_ordering_and_schedule() -> None:
    async with SessionLocal() as session:
        low = await _create(session, priority=0)
        high = await _create(session, priority=3)
        later = await _create(session, priority=3)
        later.scheduled_at = datetime.now(timezone.utc) + timedelta(hours=1)
        await session.commit()

        pending = await messages_repo.get_pending_messages(session, limit=10)
        assert [message.id for message in pending] == [high.id, low.id]


@pytest.mark.asyncio
async def test_due_retries_are_promoted() -> None:
    async with SessionLocal() as session:
        due = await _create(session)
        waiting = await _create(session)
        await messages_repo.fail_message(session, message=due, error="boom", backoff_base_s=0)
        await messages_repo.fail_message(session, message=waiting, error="boom", backoff_base_s=3600)
        await session.commit()

        promoted = await messages_repo.promote_due_retries(session, now=datetime.now(timezone.utc) + timedelta(seconds=1))
        await session.commit()

        assert promoted == 1
        refreshed = await messages_repo.get_message(session, tenant_id=TENANT, message_id=due.id)
        await session.refresh(refreshed)
        assert refreshed.status == MessageStatus.PENDING.value


@pytest.mark.asyncio
async def test_startup_recovery_reconciles_in_flight_rows() -> None:
    async with SessionLocal() as session:
        processing = await _create(session)
        processing.status = MessageStatus.PROCESSING.value
        processing.worker_name = "email-worker"
        processing.updated_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        exhausted = await _create(session, max_retries=2)
        exhausted.status = MessageStatus.RETRYING.value
        exhausted.retry_count = 2
        retryable = await _create(session, max_retries=2)
        retryable.status = MessageStatus.RETRYING.value
        retryable.retry_count = 1
        await session.commit()

        counts = await messages_repo.startup_recovery(session)
        await session.commit()
        assert counts == {"processing": 1, "retrying": 1, "abandoned": 1}

        for message in (processing, exhausted, retryable):
            await session.refresh(message)
        assert processing.status == MessageStatus.PENDING.value
        assert processing.worker_name is None
        assert exhausted.status == MessageStatus.ABANDONED.value
        assert exhausted.processed_at is not None
        assert retryable.status == MessageStatus.PENDING.value

        stats = await messages_repo.get_message_stats(session)
        assert stats[MessageStatus.PROCESSING.value] == 0
        assert stats[MessageStatus.ABANDONED.value] == 1


@pytest.mark.asyncio
async def test_orphan_sweep_only_touches_stale_processing() -> None:
    async with SessionLocal() as session:
        stale = await _create(session)
        stale.status = MessageStatus.PROCESSING.value
        stale.updated_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        fresh = await _create(session)
        fresh.status = MessageStatus.PROCESSING.value
        fresh.updated_at = datetime.now(timezone.utc)
        await session.commit()

        recovered = await messages_repo.recover_orphaned(session, max_age_s=300)
        await session.commit()

        assert recovered == 1
        await session.refresh(stale)
        await session.refresh(fresh)
        assert stale.status == MessageStatus.PENDING.value
        assert stale.error == messages_repo.RECOVERED_ERROR
        assert fresh.status == MessageStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_cleanup_removes_old_terminal_messages() -> None:
    async with SessionLocal() as session:
        old = await _create(session)
        await messages_repo.complete_message(session, message=old)
        old.processed_at = datetime.now(timezone.utc) - timedelta(days=8)
        old_id = old.id
        recent = await _create(session)
        await messages_repo.complete_message(session, message=recent)
        await session.commit()

        deleted = await messages_repo.cleanup_old_messages(session, max_age_s=7 * 24 * 3600)
        await session.commit()

        assert deleted == 1
        assert await messages_repo.get_message(session, tenant_id=TENANT, message_id=recent.id) is not None
        assert await messages_repo.list_message_events(session, message_id=old_id) == []


@pytest.mark.asyncio
async def test_stats_are_scoped_by_tenant() -> None:
    async with SessionLocal() as session:
        await _create(session)
        await _create(session)
        other = await _create(session, tenant_id="tenant-b")
        await messages_repo.complete_message(session, message=other)
        await session.commit()

        scoped = await messages_repo.get_message_stats(session, tenant_id=TENANT)
        assert scoped[MessageStatus.PENDING.value] == 2
        assert scoped["total"] == 2

        everything = await messages_repo.get_message_stats(session)
        assert everything[MessageStatus.COMPLETED.value] == 1
        assert everything["total"] == 3


@pytest.mark.asyncio
async def test_orphan_sweep_leaves_young_processing_message_alone() -> None:
    async with SessionLocal() as session:
        young = await _create(session)
        await messages_repo.mark_processing(session, message=young, worker_name="email-worker")
        # Just inside the stale threshold.
        young.updated_at = datetime.now(timezone.utc) - timedelta(seconds=290)
        await session.commit()

        assert await messages_repo.recover_orphaned(session, max_age_s=300) == 0
        await session.commit()

        await session.refresh(young)
        assert young.status == MessageStatus.PROCESSING.value
        assert young.worker_name == "email-worker"
        assert young.error is None
        events = await messages_repo.list_message_events(session, message_id=young.id)
        assert not [event for event in events if event.event_type == MessageEventType.RECOVERED.value]
