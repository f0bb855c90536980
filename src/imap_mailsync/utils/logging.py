"""Logging helpers for console output."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from imap_mailsync.config.settings import LoggingSettings

RESERVED_LOG_RECORD_KEYS: frozenset[str] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    },
)


EVENT_KEY = "event"
_CONTEXT_PREFIX = "ctx_"


def event_extra(name: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    """Build the `extra` mapping for a structured engine event.

    Field names that clash with LogRecord attributes get a prefix so
    `logging` accepts them; `JsonLogFormatter` strips it again.

    Args:
        name: Event name.
        fields: Event fields.

    Returns:
        Keyword arguments for `Logger.log(..., extra=...)`.
    """
    extra: dict[str, Any] = {EVENT_KEY: name}
    for key, value in fields.items():
        if key in RESERVED_LOG_RECORD_KEYS or key == EVENT_KEY:
            key = f"{_CONTEXT_PREFIX}{key}"
        extra[key] = value
    return extra


def _safe_json_value(value: object) -> Any:
    """Coerce a value to something JSON-serializable.

    Args:
        value: Value to serialize.

    Returns:
        The original value if JSON-serializable; otherwise, its string representation.
    """
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class JsonLogFormatter(logging.Formatter):
    """Formatter that emits one JSON object per record.

    Records carrying an engine event get the event name as a top-level
    `event` key and their fields nested under `fields`. Any other `extra`
    attributes are written at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON.

        Args:
            record: Log record to format.

        Returns:
            JSON string representation.
        """
        payload: dict[str, Any] = {
            "ts": datetime.now(tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        event = getattr(record, EVENT_KEY, None)
        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in RESERVED_LOG_RECORD_KEYS or key == EVENT_KEY:
                continue
            if key.startswith("_"):
                continue
            if event is not None and key.startswith(_CONTEXT_PREFIX):
                key = key.removeprefix(_CONTEXT_PREFIX)
            extras[key] = _safe_json_value(value)

        if event is not None:
            payload[EVENT_KEY] = event
            payload["fields"] = extras
        else:
            payload.update(extras)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def configure_logging(*, settings: LoggingSettings) -> None:
    """Configure stderr logging for CLI runs.

    Args:
        settings: Logging settings (level and JSON/human output).
    """
    level_name = settings.level.strip().upper() if settings.level else "INFO"
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if settings.json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ),
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)

    # aioimaplib logs every protocol line at DEBUG.
    logging.getLogger("aioimaplib").setLevel(max(level, logging.INFO))
