from __future__ import annotations

import logging

from arq.connections import RedisSettings

from locally.core.config import get_settings
from locally.core.logging import configure_logging
from locally.services.messages.builtin import default_workers
from locally.services.messages.service import get_message_service

logger = logging.getLogger(__name__)


async def dispatch_pending(ctx) -> int:
    # Wake-up job enqueued once a new message commits; the poll loop covers dropped jobs.
    return await get_message_service().process_once()


async def _startup(ctx) -> None:
    # Recovery runs inside start(), before the first dispatch pass.
    configure_logging()
    service = get_message_service()
    for worker in default_workers():
        await service.register_worker(worker)
    await service.start()
    ctx["message_service"] = service


async def _shutdown(ctx) -> None:
    service = ctx.get("message_service")
    if service is not None:
        await service.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.messages_queue_name
    max_tries = 1
    functions = [dispatch_pending]
    on_startup = _startup
    on_shutdown = _shutdown
