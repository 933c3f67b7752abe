from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from locally.domain.events import Event
from locally.domain.models import Message
from locally.services.events.service import EventService, get_event_service
from locally.services.messages.worker import Worker, WorkerMetadata, message_payload


logger = logging.getLogger(__name__)

Publisher = Callable[[str, str, dict[str, Any] | None], Awaitable[Event]]


class EmailWorker(Worker):
    @property
    def metadata(self) -> WorkerMetadata:
        return WorkerMetadata(name="email-worker", message_type="email", description="Processes email messages")

    async def initialize(self) -> None:
        logger.info("message_worker_initialized name=%s", self.metadata.name)

    async def handle(self, message: Message) -> None:
        payload = message_payload(message)
        if not isinstance(payload, dict) or not payload.get("to"):
            raise ValueError("email payload requires a 'to' address")
        logger.info(
            "email_message_sent message_id=%s to=%s subject=%s",
            message.id,
            payload["to"],
            payload.get("subject", ""),
        )


class NotificationWorker(Worker):
    """Delivers notification messages to the tenant's live event stream.

    The payload names the recipient (``user_id``), an optional ``message`` and
    a ``type`` selecting the system event severity, ``info`` by default.
    """

    @property
    def metadata(self) -> WorkerMetadata:
        return WorkerMetadata(
            name="notification-worker",
            message_type="notification",
            description="Processes notification messages",
        )

    async def initialize(self) -> None:
        logger.info("message_worker_initialized name=%s", self.metadata.name)

    @staticmethod
    def _publishers(events: EventService) -> dict[str, Publisher]:
        return {
            "alert": events.publish_alert,
            "info": events.publish_info,
            "warning": events.publish_warning,
            "error": events.publish_error,
            "debug": events.publish_debug,
            "trace": events.publish_trace,
            "fatal": events.publish_fatal,
        }

    async def handle(self, message: Message) -> None:
        payload = message_payload(message)
        if not isinstance(payload, dict) or not payload.get("user_id"):
            raise ValueError("notification payload requires a 'user_id'")
        level = str(payload.get("type") or "info").lower()
        publish = self._publishers(get_event_service()).get(level)
        if publish is None:
            raise ValueError(f"unsupported notification type '{level}'")
        event = await publish(
            message.tenant_id,
            str(payload.get("message") or ""),
            {"user_id": str(payload["user_id"]), "message_id": message.id},
        )
        logger.info(
            "notification_message_sent message_id=%s user_id=%s type=%s event_id=%s",
            message.id,
            payload["user_id"],
            level,
            event.id,
        )


def default_workers() -> list[Worker]:
    return [EmailWorker(), NotificationWorker()]
