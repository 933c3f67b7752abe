from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Protocol
from uuid import uuid4

from locally.core.config import GLOBAL_TENANT_ID, GLOBAL_TENANT_SLUG
from locally.domain.events import Event, EventType
from locally.services.events.hub import EventHub, SSEClient


logger = logging.getLogger(__name__)

CONNECTED_COMMENT = ": SSE connection established\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class DisconnectAware(Protocol):
    async def is_disconnected(self) -> bool:
        ...


def is_global_tenant(tenant_id: str | None) -> bool:
    return not tenant_id or tenant_id in (GLOBAL_TENANT_SLUG, GLOBAL_TENANT_ID)


def heartbeat_event(client_id: str, tenant_id: str) -> Event:
    return Event(
        type=EventType.SYSTEM_ALERT,
        tenant_id=tenant_id,
        data={"type": "heartbeat", "client_id": client_id, "message": "Connection heartbeat"},
    )


async def stream_events(
    request: DisconnectAware,
    *,
    hub: EventHub,
    tenant_id: str,
    username: str,
    heartbeat_s: float,
    poll_interval_s: float = 1.0,
) -> AsyncGenerator[str, None]:
    """Bridge one streaming response to the hub.

    A connection on a tenant also registers a twin on the global tenant that
    shares its channel, so global broadcasts reach the same stream.
    """
    yield CONNECTED_COMMENT

    client_id = str(uuid4())
    is_global = is_global_tenant(tenant_id)
    resolved_tenant = GLOBAL_TENANT_ID if is_global else tenant_id
    channel = hub.new_channel()
    clients = [SSEClient(id=client_id, tenant_id=resolved_tenant, username=username, channel=channel)]
    if not is_global:
        clients.append(
            SSEClient(id=f"{client_id}-global", tenant_id=GLOBAL_TENANT_ID, username=username, channel=channel)
        )

    welcome: dict[str, Any] = {
        "client_id": client_id,
        "connected": True,
        "message": "Connected to event stream",
        "username": username,
        "tenant_id": resolved_tenant,
        "is_global": is_global,
    }
    channel.offer(Event(type=EventType.CONNECTION_ESTABLISHED, tenant_id=resolved_tenant, data=welcome))
    for client in clients:
        await hub.register(client)

    loop = asyncio.get_running_loop()
    last_heartbeat = loop.time()
    wait_s = min(poll_interval_s, heartbeat_s)
    try:
        while True:
            if await request.is_disconnected():
                break
            timed_out = False
            try:
                event = await channel.get(timeout=wait_s)
            except asyncio.TimeoutError:
                timed_out = True
            if not timed_out:
                if event is None:
                    # The hub closed the channel on shutdown or after a stall.
                    break
                yield event.to_sse()
            if loop.time() - last_heartbeat >= heartbeat_s:
                last_heartbeat = loop.time()
                yield heartbeat_event(client_id, resolved_tenant).to_sse()
    finally:
        for client in clients:
            await hub.unregister(client.id)
        logger.info("sse_client_disconnected client_id=%s tenant_id=%s", client_id, resolved_tenant)
