from __future__ import annotations

import pytest

from locally.domain.events import Event, EventType
from locally.services.events.hub import EventHub, SSEClient


def _event(tenant_id: str, **data: object) -> Event:
    return Event(type=EventType.SYSTEM_INFO, tenant_id=tenant_id, data=dict(data))


@pytest.mark.asyncio
async def test_broadcast_reaches_only_matching_tenant() -> None:
    hub = EventHub(client_buffer=10)
    hub.start()
    ours = SSEClient(id="c1", tenant_id="t1", username="alice", channel=hub.new_channel())
    theirs = SSEClient(id="c2", tenant_id="t2", username="bob", channel=hub.new_channel())
    await hub.register(ours)
    await hub.register(theirs)

    event = _event("t1", x=1)
    await hub.broadcast(event)
    await hub.drain()

    assert ours.channel.qsize() == 1
    assert theirs.channel.qsize() == 0
    received = await ours.channel.get(timeout=1)
    assert received is event
    await hub.stop()


@pytest.mark.asyncio
async def test_stalled_client_is_dropped_and_closed() -> None:
    hub = EventHub(client_buffer=1)
    hub.start()
    client = SSEClient(id="slow", tenant_id="t1", username="alice", channel=hub.new_channel())
    await hub.register(client)

    first = _event("t1", n=1)
    await hub.broadcast(first)
    await hub.broadcast(_event("t1", n=2))
    await hub.drain()

    assert hub.client_ids() == []
    assert client.channel.closed
    # The backlog is dropped so the close sentinel fits.
    assert await client.channel.get(timeout=1) is None
    await hub.stop()


@pytest.mark.asyncio
async def test_shared_channel_closes_after_last_registration() -> None:
    hub = EventHub()
    hub.start()
    channel = hub.new_channel()
    await hub.register(SSEClient(id="c1", tenant_id="t1", username="alice", channel=channel))
    await hub.register(SSEClient(id="c1-global", tenant_id="global", username="alice", channel=channel))
    await hub.drain()
    assert hub.stats()["active_connections"] == 2

    await hub.unregister("c1")
    await hub.drain()
    assert not channel.closed
    assert hub.connected_clients("t1") == 0
    assert hub.connected_clients("global") == 1

    await hub.unregister("c1-global")
    await hub.drain()
    assert channel.closed
    assert hub.stats() == {"active_connections": 0, "total_connections": 2, "tenant_counts": {}}
    await hub.stop()


@pytest.mark.asyncio
async def test_stop_closes_live_channels_once() -> None:
    hub = EventHub()
    hub.start()
    channel = hub.new_channel()
    await hub.register(SSEClient(id="c1", tenant_id="t1", username="alice", channel=channel))
    await hub.register(SSEClient(id="c1-global", tenant_id="global", username="alice", channel=channel))
    await hub.drain()

    await hub.stop()

    assert channel.closed
    assert await channel.get(timeout=1) is None
    assert not hub.running
    assert hub.client_ids() == []


@pytest.mark.asyncio
async def test_operations_after_stop_are_ignored() -> None:
    hub = EventHub()
    hub.start()
    await hub.stop()
    channel = hub.new_channel()
    await hub.register(SSEClient(id="late", tenant_id="t1", username="alice", channel=channel))
    await hub.broadcast(_event("t1"))
    assert hub.client_ids() == []
    assert channel.qsize() == 0


@pytest.mark.asyncio
async def test_channel_references_are_tracked_per_channel_object() -> None:
    hub = EventHub()
    hub.start()
    shared = hub.new_channel()
    solo = hub.new_channel()
    await hub.register(SSEClient(id="a", tenant_id="t1", username="alice", channel=shared))
    await hub.register(SSEClient(id="a-global", tenant_id="global", username="alice", channel=shared))
    await hub.register(SSEClient(id="b", tenant_id="t1", username="bob", channel=solo))
    await hub.drain()
    assert hub._channel_refs == {shared: 2, solo: 1}

    await hub.unregister("b")
    await hub.drain()
    assert solo.closed
    assert not shared.closed
    assert hub._channel_refs == {shared: 2}

    # A fresh channel starts its own count rather than inheriting a released one.
    replacement = hub.new_channel()
    await hub.register(SSEClient(id="c", tenant_id="t1", username="carol", channel=replacement))
    await hub.unregister("a")
    await hub.drain()
    assert hub._channel_refs == {shared: 1, replacement: 1}
    assert not replacement.closed
    await hub.stop()
