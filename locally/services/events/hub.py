from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any
import weakref

from locally.domain.events import Event


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClientChannel:
    """Bounded outbound queue for one SSE connection.

    The hub is the only producer and the connection writer the only consumer.
    Closing enqueues a sentinel so a writer blocked on ``get`` wakes up and exits.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: Event) -> bool:
        # Non-blocking send; False means the channel is full or closed.
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            # A dropped client loses its backlog; the sentinel must fit.
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    async def get(self, timeout: float | None = None) -> Event | None:
        """Return the next event, or None once the channel is closed.

        Raises ``asyncio.TimeoutError`` when nothing arrives within ``timeout``.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is self._CLOSED:
            return None
        return item

    def qsize(self) -> int:
        return self._queue.qsize()


@dataclass
class SSEClient:
    id: str
    tenant_id: str
    username: str
    channel: ClientChannel
    connected_at: datetime = field(default_factory=_utc_now)


class _Op(str, Enum):
    REGISTER = "register"
    UNREGISTER = "unregister"
    BROADCAST = "broadcast"


class EventHub:
    """Per-tenant fan-out of events to live SSE clients.

    One task owns the client registry. Registration, removal and broadcasts
    arrive through a single bounded inbox so they are applied in submission
    order without locks. Fan-out never blocks: a client whose channel is full
    is dropped instead of stalling the publisher.
    """

    def __init__(
        self,
        *,
        broadcast_buffer: int = 100,
        client_buffer: int = 50,
        stats_interval_s: float = 300.0,
    ) -> None:
        self.client_buffer = client_buffer
        self.stats_interval_s = stats_interval_s
        self._broadcast_buffer = broadcast_buffer
        self._inbox: asyncio.Queue[tuple[_Op, Any]] | None = None
        self._clients: dict[str, SSEClient] = {}
        # A channel may back a tenant client and its global twin.
        self._channel_refs: dict[ClientChannel, int] = {}
        self._closed_channels: weakref.WeakSet[ClientChannel] = weakref.WeakSet()
        self._tenant_counts: Counter[str] = Counter()
        self.total_connections = 0
        self.running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._stats_task: asyncio.Task[None] | None = None

    def new_channel(self) -> ClientChannel:
        return ClientChannel(self.client_buffer)

    def start(self) -> None:
        if self.running:
            return
        self._inbox = asyncio.Queue(maxsize=self._broadcast_buffer)
        self.running = True
        self._loop_task = asyncio.create_task(self._run(), name="event-hub")
        self._stats_task = asyncio.create_task(self._stats_loop(), name="event-hub-stats")
        logger.info("event_hub_started")

    def shutdown(self) -> None:
        # Close every channel exactly once so writers exit; registry is cleared.
        self.running = False
        for client in list(self._clients.values()):
            self._close_channel(client.channel)
        self._clients.clear()
        self._channel_refs.clear()
        self._tenant_counts.clear()
        for task in (self._loop_task, self._stats_task):
            if task is not None and not task.done():
                task.cancel()

    async def stop(self) -> None:
        tasks = [task for task in (self._loop_task, self._stats_task) if task is not None]
        self.shutdown()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._stats_task = None
        logger.info("event_hub_stopped total_connections=%s", self.total_connections)

    async def _submit(self, op: _Op, payload: Any) -> None:
        if not self.running or self._inbox is None:
            logger.warning("event_hub_not_running op=%s", op.value)
            return
        await self._inbox.put((op, payload))

    async def register(self, client: SSEClient) -> None:
        await self._submit(_Op.REGISTER, client)

    async def unregister(self, client_id: str) -> None:
        await self._submit(_Op.UNREGISTER, client_id)

    async def broadcast(self, event: Event) -> None:
        await self._submit(_Op.BROADCAST, event)

    async def _run(self) -> None:
        assert self._inbox is not None
        while self.running:
            op, payload = await self._inbox.get()
            try:
                if op is _Op.REGISTER:
                    self._add(payload)
                elif op is _Op.UNREGISTER:
                    self._remove(payload)
                else:
                    self._fan_out(payload)
            except Exception:
                logger.exception("event_hub_op_failed op=%s", op.value)
            finally:
                self._inbox.task_done()

    async def drain(self) -> None:
        # Wait until every submitted operation has been applied.
        if self._inbox is not None and self.running:
            await self._inbox.join()

    def _add(self, client: SSEClient) -> None:
        if client.channel.closed:
            return
        self._clients[client.id] = client
        key = client.channel
        self._channel_refs[key] = self._channel_refs.get(key, 0) + 1
        self._tenant_counts[client.tenant_id] += 1
        self.total_connections += 1
        logger.info(
            "event_hub_client_registered client_id=%s tenant_id=%s username=%s active=%s",
            client.id,
            client.tenant_id,
            client.username,
            len(self._clients),
        )

    def _remove(self, client_id: str) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        self._tenant_counts[client.tenant_id] -= 1
        if self._tenant_counts[client.tenant_id] <= 0:
            del self._tenant_counts[client.tenant_id]
        key = client.channel
        remaining = self._channel_refs.get(key, 0) - 1
        if remaining <= 0:
            self._channel_refs.pop(key, None)
            self._close_channel(client.channel)
        else:
            self._channel_refs[key] = remaining
        logger.info(
            "event_hub_client_unregistered client_id=%s tenant_id=%s active=%s",
            client.id,
            client.tenant_id,
            len(self._clients),
        )

    def _close_channel(self, channel: ClientChannel) -> None:
        if channel in self._closed_channels or channel.closed:
            return
        self._closed_channels.add(channel)
        channel.close()

    def _fan_out(self, event: Event) -> None:
        stalled: set[ClientChannel] = set()
        delivered = 0
        for client in self._clients.values():
            if client.tenant_id != event.tenant_id:
                continue
            if client.channel.offer(event):
                delivered += 1
            else:
                stalled.add(client.channel)
        if stalled:
            # Drop every registration sharing a stalled channel.
            for client_id in [c.id for c in self._clients.values() if c.channel in stalled]:
                logger.warning("event_hub_client_stalled client_id=%s", client_id)
                self._remove(client_id)
        logger.debug(
            "event_hub_broadcast event_id=%s type=%s tenant_id=%s delivered=%s",
            event.id,
            event.type.value,
            event.tenant_id,
            delivered,
        )

    async def _stats_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.stats_interval_s)
            logger.debug("event_hub_stats %s", self.stats())

    def stats(self) -> dict[str, Any]:
        return {
            "active_connections": len(self._clients),
            "total_connections": self.total_connections,
            "tenant_counts": dict(self._tenant_counts),
        }

    def connected_clients(self, tenant_id: str) -> int:
        return self._tenant_counts.get(tenant_id, 0)

    def client_ids(self) -> list[str]:
        return list(self._clients)
