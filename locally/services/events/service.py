from __future__ import annotations

import logging
import threading
from typing import Any

from locally.core.config import get_settings
from locally.domain.events import Event, EventType
from locally.services.events.hub import EventHub


logger = logging.getLogger(__name__)


class EventService:
    # Process-wide facade over the hub; convenience publishers per system event type.

    def __init__(self, hub: EventHub) -> None:
        self.hub = hub

    def ensure_started(self) -> None:
        # Start lazily on the running loop; app lifespan also starts it eagerly.
        if not self.hub.running:
            self.hub.start()

    async def publish(self, event: Event | None) -> None:
        if event is None:
            logger.warning("event_publish_skipped reason=nil_event")
            return
        self.ensure_started()
        await self.hub.broadcast(event)

    async def publish_system(
        self,
        event_type: EventType,
        tenant_id: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Event:
        payload = {"message": message}
        payload.update(data or {})
        event = Event(type=event_type, tenant_id=tenant_id, data=payload)
        await self.publish(event)
        return event

    async def publish_alert(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_ALERT, tenant_id, message, data)

    async def publish_error(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_ERROR, tenant_id, message, data)

    async def publish_info(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_INFO, tenant_id, message, data)

    async def publish_warning(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_WARNING, tenant_id, message, data)

    async def publish_debug(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_DEBUG, tenant_id, message, data)

    async def publish_trace(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_TRACE, tenant_id, message, data)

    async def publish_fatal(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_FATAL, tenant_id, message, data)

    async def publish_panic(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_PANIC, tenant_id, message, data)

    async def publish_recover(self, tenant_id: str, message: str, data: dict[str, Any] | None = None) -> Event:
        return await self.publish_system(EventType.SYSTEM_RECOVER, tenant_id, message, data)

    async def stop(self) -> None:
        await self.hub.stop()


_service: EventService | None = None
_service_lock = threading.Lock()


def get_event_service() -> EventService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                settings = get_settings()
                _service = EventService(
                    EventHub(
                        broadcast_buffer=settings.events_broadcast_buffer,
                        client_buffer=settings.events_client_buffer,
                        stats_interval_s=settings.events_stats_interval_s,
                    )
                )
    return _service


def reset_event_service() -> None:
    # Closes live channels and cancels hub tasks before clearing the holder.
    global _service
    with _service_lock:
        if _service is not None:
            _service.hub.shutdown()
        _service = None
