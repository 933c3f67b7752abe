from __future__ import annotations

import pytest

from locally.domain.messages import MessageStatus
from locally.persistence.db import SessionLocal
from locally.persistence.repos import messages as messages_repo
from locally.services.messages.builtin import default_workers
from locally.services.messages.service import get_message_service
from locally.workers import message_worker


def test_worker_settings_registers_dispatch_job() -> None:
    settings = message_worker.WorkerSettings
    assert message_worker.dispatch_pending in settings.functions
    assert settings.queue_name == "locally-messages"
    assert settings.max_tries == 1


@pytest.mark.asyncio
async def test_dispatch_job_runs_one_pass() -> None:
    service = get_message_service()
    for worker in default_workers():
        await service.register_worker(worker)
    async with SessionLocal() as session:
        message = await service.post_message(
            session,
            tenant_id="tenant-a",
            message_type="notification",
            payload={"user_id": "u1"},
        )
        await session.commit()

    assert await message_worker.dispatch_pending({}) == 1

    async with SessionLocal() as session:
        stored = await messages_repo.get_message(session, tenant_id="tenant-a", message_id=message.id)
    assert stored.status == MessageStatus.COMPLETED.value
    assert stored.worker_name == "notification-worker"


@pytest.mark.asyncio
async def test_worker_startup_and_shutdown() -> None:
    ctx: dict = {}
    await message_worker._startup(ctx)
    service = ctx["message_service"]
    assert service is get_message_service()
    assert service.running
    assert {worker.metadata.name for worker in service.workers} == {"email-worker", "notification-worker"}

    await message_worker._shutdown(ctx)
    assert not service.running
