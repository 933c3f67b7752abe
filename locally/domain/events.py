from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any
from uuid import uuid4


class EventType(str, Enum):
    CONNECTION_ESTABLISHED = "connection.established"
    SYSTEM_ALERT = "system.alert"
    SYSTEM_ERROR = "system.error"
    SYSTEM_INFO = "system.info"
    SYSTEM_WARNING = "system.warning"
    SYSTEM_DEBUG = "system.debug"
    SYSTEM_TRACE = "system.trace"
    SYSTEM_FATAL = "system.fatal"
    SYSTEM_PANIC = "system.panic"
    SYSTEM_RECOVER = "system.recover"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Event:
    # Transient broadcast record; lives only while the hub delivers it.
    type: EventType
    tenant_id: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "tenant_id": self.tenant_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }

    def to_sse(self) -> str:
        # Substitute an alert frame for unserializable data so the stream never breaks.
        try:
            body = json.dumps(self.to_dict())
        except (TypeError, ValueError) as exc:
            fallback = Event(
                type=EventType.SYSTEM_ALERT,
                tenant_id=self.tenant_id,
                data={"message": "Failed to serialize event", "error": str(exc)},
            )
            body = json.dumps(fallback.to_dict())
        return f"data: {body}\n\n"


def parse_event_type(value: str) -> EventType:
    # Raise ValueError for unknown event types so routes can answer 400.
    return EventType(value)
