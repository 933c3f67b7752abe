from __future__ import annotations

from datetime import datetime, timezone
import json
import logging

from locally.core.config import get_settings


_HANDLER_NAME = "locally-root"


class JsonFormatter(logging.Formatter):
    # Keep log records flat so collectors can index them without parsing messages.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    # Install a single root handler; repeated calls only refresh the level.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root.addHandler(handler)
