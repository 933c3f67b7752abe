from __future__ import annotations

import json

import pytest

from locally.domain.events import Event, EventType, parse_event_type


def test_to_sse_frames_the_json_body() -> None:
    event = Event(type=EventType.SYSTEM_INFO, tenant_id="t1", data={"x": 1})
    frame = event.to_sse()
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    body = json.loads(frame[len("data: "):].strip())
    assert body["id"] == event.id
    assert body["type"] == "system.info"
    assert body["tenant_id"] == "t1"
    assert body["data"] == {"x": 1}


def test_unserializable_data_becomes_an_alert_frame() -> None:
    event = Event(type=EventType.SYSTEM_INFO, tenant_id="t1", data={"bad": object()})
    body = json.loads(event.to_sse()[len("data: "):].strip())
    assert body["type"] == "system.alert"
    assert body["tenant_id"] == "t1"
    assert body["data"]["message"] == "Failed to serialize event"


def test_parse_event_type() -> None:
    assert parse_event_type("system.warning") is EventType.SYSTEM_WARNING
    with pytest.raises(ValueError):
        parse_event_type("system.unknown")
