from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
from typing import Any

from locally.domain.models import Message


@dataclass(frozen=True)
class WorkerMetadata:
    name: str
    message_type: str
    description: str = ""
    version: str = "1.0.0"
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "message_type": self.message_type,
            "enabled": self.enabled,
        }


class Worker(ABC):
    """Handler for one message type.

    ``handle`` may be invoked again for the same message after a crash, since
    recovery moves processing rows back to pending, so implementations must be
    idempotent. Raising marks the attempt failed and schedules a retry.
    """

    @property
    @abstractmethod
    def metadata(self) -> WorkerMetadata:
        ...

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def handle(self, message: Message) -> None:
        ...

    async def shutdown(self) -> None:
        return None


def message_payload(message: Message) -> Any:
    # Payloads are stored as JSON text; malformed text is handed over verbatim.
    if message.payload is None:
        return None
    try:
        return json.loads(message.payload)
    except ValueError:
        return message.payload
