from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}

# Extra keys whose values must never reach the log stream.
_SECRET_KEYS = frozenset({"api_key", "erp_api_key", "jwt_secret", "p256dh", "auth", "token", "password"})


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: "***" if str(key).lower() in _SECRET_KEYS else _scrub(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are flattened into the object."""

    def __init__(self, *, service: str | None = None):
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self._service:
            payload["service"] = self._service

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        payload.update(_scrub(extras))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def setup_json_logging(level: str | int = logging.INFO, *, service: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service=service))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
    root_logger.setLevel(level)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)


def truncate_error(exc: BaseException | str, limit: int = 1000) -> str:
    text = str(exc)
    if not text and isinstance(exc, BaseException):
        text = exc.__class__.__name__
    return text[:limit]
