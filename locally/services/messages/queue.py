from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings

from locally.core.config import get_settings


logger = logging.getLogger(__name__)

DISPATCH_JOB = "dispatch_pending"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


async def get_redis_pool():
    # Cache the pool per event loop; loop-bound pools break across test loops.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.messages_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def notify_dispatch() -> bool:
    """Wake the out-of-process worker; the database row stays the source of truth."""
    settings = get_settings()
    if not settings.messages_notify_queue:
        return False
    try:
        redis = await get_redis_pool()
        await redis.enqueue_job(DISPATCH_JOB, _queue_name=settings.messages_queue_name)
    except Exception:  # noqa: BLE001 - the poll loop picks the message up regardless.
        logger.warning("message_dispatch_notify_failed queue=%s", settings.messages_queue_name, exc_info=True)
        return False
    return True
