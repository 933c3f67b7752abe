from __future__ import annotations

import asyncio
import json

import pytest

from locally.core.config import GLOBAL_TENANT_ID
from locally.domain.events import Event, EventType
from locally.services.events.hub import EventHub
from locally.services.events.sse import CONNECTED_COMMENT, is_global_tenant, stream_events


class FakeRequest:
    def __init__(self) -> None:
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


def _body(frame: str) -> dict:
    assert frame.startswith("data: ")
    return json.loads(frame[len("data: "):].strip())


async def _open(hub: EventHub, request: FakeRequest, tenant_id: str, username: str):
    stream = stream_events(
        request,
        hub=hub,
        tenant_id=tenant_id,
        username=username,
        heartbeat_s=0.2,
        poll_interval_s=0.05,
    )
    assert await stream.__anext__() == CONNECTED_COMMENT
    welcome = _body(await stream.__anext__())
    await hub.drain()
    return stream, welcome


def test_is_global_tenant() -> None:
    assert is_global_tenant("")
    assert is_global_tenant(None)
    assert is_global_tenant("global")
    assert is_global_tenant(GLOBAL_TENANT_ID)
    assert not is_global_tenant("t1")


@pytest.mark.asyncio
async def test_stream_delivers_tenant_events_and_heartbeats() -> None:
    hub = EventHub()
    hub.start()
    ours, welcome = await _open(hub, FakeRequest(), "t1", "alice")
    theirs, _ = await _open(hub, FakeRequest(), "t2", "bob")

    assert welcome["type"] == "connection.established"
    assert welcome["data"]["username"] == "alice"
    assert welcome["data"]["is_global"] is False
    # Each tenant stream also registers a global twin.
    assert hub.connected_clients("t1") == 1
    assert hub.connected_clients(GLOBAL_TENANT_ID) == 2

    await hub.broadcast(Event(type=EventType.SYSTEM_INFO, tenant_id="t1", data={"x": 1}))
    frame = await asyncio.wait_for(ours.__anext__(), timeout=2)
    assert '"x": 1' in frame
    assert _body(frame)["type"] == "system.info"

    other = await asyncio.wait_for(theirs.__anext__(), timeout=2)
    body = _body(other)
    assert body["type"] == "system.alert"
    assert body["data"]["type"] == "heartbeat"
    assert '"x"' not in other

    await ours.aclose()
    await theirs.aclose()
    await hub.drain()
    assert hub.client_ids() == []
    await hub.stop()


@pytest.mark.asyncio
async def test_global_broadcast_reaches_tenant_streams() -> None:
    hub = EventHub()
    hub.start()
    stream, _ = await _open(hub, FakeRequest(), "t1", "alice")

    await hub.broadcast(Event(type=EventType.SYSTEM_WARNING, tenant_id=GLOBAL_TENANT_ID, data={"y": 2}))
    body = _body(await asyncio.wait_for(stream.__anext__(), timeout=2))
    assert body["type"] == "system.warning"
    assert body["data"] == {"y": 2}

    await stream.aclose()
    await hub.stop()


@pytest.mark.asyncio
async def test_disconnect_ends_stream_and_unregisters() -> None:
    hub = EventHub()
    hub.start()
    request = FakeRequest()
    stream, welcome = await _open(hub, request, "", "root")
    assert welcome["tenant_id"] == GLOBAL_TENANT_ID
    assert welcome["data"]["is_global"] is True
    assert hub.connected_clients(GLOBAL_TENANT_ID) == 1

    request.disconnected = True
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=2)
    await hub.drain()
    assert hub.client_ids() == []
    await hub.stop()


@pytest.mark.asyncio
async def test_hub_shutdown_ends_stream() -> None:
    hub = EventHub()
    hub.start()
    stream, _ = await _open(hub, FakeRequest(), "t1", "alice")

    hub.shutdown()
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=2)
    await hub.stop()
