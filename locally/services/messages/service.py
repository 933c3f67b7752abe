from __future__ import annotations

import asyncio
from datetime import datetime
import json
import logging
import threading
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from locally.core.config import GLOBAL_TENANT_ID, get_settings
from locally.core.errors import MessageServiceError, WorkerRegistrationError
from locally.domain.messages import TERMINAL_STATUSES, MessagePriority, MessageStatus
from locally.domain.models import Message
from locally.persistence.db import SessionLocal
from locally.persistence.repos import messages as messages_repo
from locally.services.audit import record_message_event, record_recovery
from locally.services.events.service import get_event_service
from locally.services.messages.worker import Worker


logger = logging.getLogger(__name__)

NO_HANDLER_ERROR = "no handler registered for message type"
NO_HANDLER = "NO_HANDLER"
RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"


class MessageService:
    """Registry of workers plus the dispatch, recovery and cleanup loops.

    Message rows are the source of truth: every transition is committed before
    the next step runs, so a crash at any point is reconciled by startup
    recovery or the orphan sweep.
    """

    def __init__(
        self,
        *,
        poll_interval_s: float = 1.0,
        poll_batch: int = 10,
        default_max_retries: int = 3,
        backoff_base_s: int = 60,
        recovery_enabled: bool = True,
        max_processing_age_s: int = 300,
        cleanup_enabled: bool = True,
        cleanup_max_age_s: int = 7 * 24 * 3600,
        cleanup_interval_s: int = 3600,
    ) -> None:
        self.poll_interval_s = poll_interval_s
        self.poll_batch = poll_batch
        self.default_max_retries = default_max_retries
        self.backoff_base_s = backoff_base_s
        self.recovery_enabled = recovery_enabled
        self.max_processing_age_s = max_processing_age_s
        self.cleanup_enabled = cleanup_enabled
        self.cleanup_max_age_s = cleanup_max_age_s
        self.cleanup_interval_s = cleanup_interval_s
        self._workers: dict[str, Worker] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self.running = False

    @classmethod
    def from_settings(cls) -> MessageService:
        settings = get_settings()
        return cls(
            poll_interval_s=settings.messages_poll_interval_s,
            poll_batch=settings.messages_poll_batch,
            default_max_retries=settings.messages_default_max_retries,
            backoff_base_s=settings.messages_backoff_base_s,
            recovery_enabled=settings.messages_recovery_enabled,
            max_processing_age_s=settings.messages_max_processing_age_s,
            cleanup_enabled=settings.messages_cleanup_enabled,
            cleanup_max_age_s=settings.messages_cleanup_max_age_s,
            cleanup_interval_s=settings.messages_cleanup_interval_s,
        )

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers.values())

    def worker_for(self, message_type: str) -> Worker | None:
        return self._workers.get(message_type)

    async def register_worker(self, worker: Worker) -> None:
        meta = worker.metadata
        for existing in self._workers.values():
            if existing.metadata.name == meta.name:
                raise WorkerRegistrationError(f"worker '{meta.name}' is already registered")
        if meta.message_type in self._workers:
            raise WorkerRegistrationError(f"message type '{meta.message_type}' already has a worker")
        await worker.initialize()
        self._workers[meta.message_type] = worker
        logger.info("message_worker_registered name=%s message_type=%s", meta.name, meta.message_type)

    async def unregister_worker(self, name: str) -> bool:
        """Drop a worker and its registry row; later messages of its type fail as unhandled."""
        message_type = next((key for key, worker in self._workers.items() if worker.metadata.name == name), None)
        if message_type is None:
            return False
        worker = self._workers.pop(message_type)
        await worker.shutdown()
        async with SessionLocal() as session:
            await messages_repo.delete_worker(session, name=name)
            await session.commit()
        logger.info("message_worker_unregistered name=%s message_type=%s", name, message_type)
        return True

    async def post_message(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        message_type: str,
        payload: Any = None,
        priority: int = MessagePriority.NORMAL,
        max_retries: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> Message:
        # Callers commit, then call notify_dispatch so the worker never polls ahead of the row.
        body = payload if isinstance(payload, str) or payload is None else json.dumps(payload)
        message = await messages_repo.create_message(
            session,
            tenant_id=tenant_id,
            message_type=message_type,
            payload=body,
            priority=int(priority),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            scheduled_at=scheduled_at,
        )
        logger.info(
            "message_posted id=%s type=%s tenant_id=%s priority=%s",
            message.id,
            message_type,
            tenant_id,
            message.priority,
        )
        return message

    async def process_once(self) -> int:
        """Run a single poll and dispatch pass; returns the number of messages handled."""
        async with SessionLocal() as session:
            await messages_repo.promote_due_retries(session)
            pending = await messages_repo.get_pending_messages(session, limit=self.poll_batch)
            await session.commit()
        for message in pending:
            await self._dispatch(message.id)
        return len(pending)

    async def _dispatch(self, message_id: str) -> None:
        async with SessionLocal() as session:
            message = await messages_repo.get_message_by_id(session, message_id)
            if message is None or message.status != MessageStatus.PENDING.value:
                return
            worker = self.worker_for(message.type)
            if worker is None or not worker.metadata.enabled:
                await messages_repo.fail_message(
                    session,
                    message=message,
                    error=f"{NO_HANDLER_ERROR}: {message.type}",
                    backoff_base_s=self.backoff_base_s,
                    retryable=False,
                )
                await record_message_event(
                    session, message=message, event_type="message.failed", outcome="failure", error_code=NO_HANDLER
                )
                await session.commit()
                logger.warning("message_no_handler id=%s type=%s", message.id, message.type)
                await self._announce_failure(message)
                return

            await messages_repo.mark_processing(session, message=message, worker_name=worker.metadata.name)
            await session.commit()
            try:
                await worker.handle(message)
            except asyncio.CancelledError:
                # Left in processing; recovery hands it back out.
                raise
            except Exception as exc:
                await messages_repo.fail_message(
                    session,
                    message=message,
                    error=str(exc) or exc.__class__.__name__,
                    backoff_base_s=self.backoff_base_s,
                )
                if message.status == MessageStatus.FAILED.value:
                    await record_message_event(
                        session,
                        message=message,
                        event_type="message.failed",
                        outcome="failure",
                        error_code=RETRIES_EXHAUSTED,
                    )
                await session.commit()
                logger.warning(
                    "message_failed id=%s type=%s retry_count=%s status=%s",
                    message.id,
                    message.type,
                    message.retry_count,
                    message.status,
                    exc_info=exc,
                )
                await self._announce_failure(message)
                return
            await messages_repo.complete_message(session, message=message)
            await session.commit()
            logger.info("message_completed id=%s type=%s", message.id, message.type)

    async def _announce_failure(self, message: Message) -> None:
        # Live subscribers of the tenant hear about failures; retries are warnings.
        events = get_event_service()
        data = {"message_id": message.id, "type": message.type, "retry_count": message.retry_count}
        if MessageStatus(message.status) in TERMINAL_STATUSES:
            await events.publish_error(message.tenant_id, f"message {message.id} failed: {message.error}", data)
        else:
            await events.publish_warning(message.tenant_id, f"message {message.id} will be retried", data)

    async def startup_recovery(self) -> dict[str, int]:
        async with SessionLocal() as session:
            counts = await messages_repo.startup_recovery(session)
            if any(counts.values()):
                await record_recovery(session, event_type="message.startup_recovery", counts=counts)
            await session.commit()
        logger.info("message_startup_recovery %s", counts)
        if any(counts.values()):
            await get_event_service().publish_recover(GLOBAL_TENANT_ID, "message queue recovered in-flight work", counts)
        return counts

    async def run_recovery(self) -> dict[str, int]:
        async with SessionLocal() as session:
            orphaned = await messages_repo.recover_orphaned(session, max_age_s=self.max_processing_age_s)
            stuck = await messages_repo.reset_stuck_retrying(session, max_age_s=self.max_processing_age_s)
            await session.commit()
        if orphaned or stuck:
            logger.info("message_recovery orphaned=%s stuck_retrying=%s", orphaned, stuck)
        return {"orphaned": orphaned, "stuck_retrying": stuck}

    async def run_cleanup(self) -> dict[str, int]:
        async with SessionLocal() as session:
            messages = await messages_repo.cleanup_old_messages(session, max_age_s=self.cleanup_max_age_s)
            abandoned = await messages_repo.cleanup_old_abandoned(session, max_age_s=self.cleanup_max_age_s)
            events = await messages_repo.cleanup_old_events(session, max_age_s=self.cleanup_max_age_s)
            await session.commit()
        if messages or abandoned or events:
            logger.info("message_cleanup messages=%s abandoned=%s events=%s", messages, abandoned, events)
        return {"messages": messages, "abandoned": abandoned, "events": events}

    async def _set_workers_running(self, is_running: bool) -> None:
        async with SessionLocal() as session:
            for worker in self._workers.values():
                meta = worker.metadata
                if is_running:
                    await messages_repo.upsert_worker(
                        session,
                        name=meta.name,
                        message_type=meta.message_type,
                        description=meta.description,
                        version=meta.version,
                        enabled=meta.enabled,
                    )
                await messages_repo.update_worker_status(session, name=meta.name, is_running=is_running)
            await session.commit()

    async def _dispatch_loop(self) -> None:
        while self.running:
            try:
                handled = await self.process_once()
            except Exception as exc:  # noqa: BLE001 - keep the dispatcher alive and surface failures in logs.
                logger.exception("message dispatch pass failed")
                await get_event_service().publish_panic(
                    GLOBAL_TENANT_ID, "message dispatch pass failed", {"error": str(exc) or exc.__class__.__name__}
                )
                handled = 0
            if not handled:
                await asyncio.sleep(self.poll_interval_s)

    async def _recovery_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.max_processing_age_s)
            try:
                await self.run_recovery()
            except Exception:  # noqa: BLE001 - recovery retries on the next tick.
                logger.exception("message recovery pass failed")

    async def _cleanup_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.cleanup_interval_s)
            try:
                await self.run_cleanup()
            except Exception:  # noqa: BLE001 - cleanup retries on the next tick.
                logger.exception("message cleanup pass failed")

    async def start(self) -> None:
        if self.running:
            raise MessageServiceError("message service is already running")
        if not self._workers:
            raise MessageServiceError("no workers registered")
        await self.startup_recovery()
        await self._set_workers_running(True)
        self.running = True
        self._tasks = [asyncio.create_task(self._dispatch_loop(), name="messages-dispatch")]
        if self.recovery_enabled:
            self._tasks.append(asyncio.create_task(self._recovery_loop(), name="messages-recovery"))
        if self.cleanup_enabled:
            self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="messages-cleanup"))
        logger.info("message_service_started workers=%s", sorted(self._workers))

    def cancel(self) -> None:
        self.running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()

    async def stop(self) -> None:
        if not self.running:
            return
        tasks = list(self._tasks)
        self.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self._set_workers_running(False)
        for worker in self._workers.values():
            await worker.shutdown()
        logger.info("message_service_stopped")


_service: MessageService | None = None
_service_lock = threading.Lock()


def get_message_service() -> MessageService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = MessageService.from_settings()
    return _service


def reset_message_service() -> None:
    global _service
    with _service_lock:
        if _service is not None:
            _service.cancel()
        _service = None
