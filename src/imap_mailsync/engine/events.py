"""Per-run observability context.

Engine components never touch global logging configuration; they receive a
`RunEvents` instance and emit named events with structured fields. Events are
logged through stdlib logging (fields land in `extra`, which the JSON
formatter serializes) and forwarded to the registered sinks.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from imap_mailsync.utils.logging import event_extra

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncEvent:
    """A structured engine event."""

    name: str
    level: int
    fields: Mapping[str, Any] = field(default_factory=dict)


EventSink = Callable[[SyncEvent], None]


class RunEvents:
    """Structured event emitter scoped to one synchronization run."""

    def __init__(
        self,
        *,
        log: logging.Logger | None = None,
        sinks: Sequence[EventSink] = (),
    ) -> None:
        """Initialize the context.

        Args:
            log: Logger to write events to (defaults to this module's logger).
            sinks: Callables receiving every emitted event.
        """
        self._log = log or logger
        self._sinks: list[EventSink] = list(sinks)

    def emit(self, name: str, *, level: int = logging.INFO, **fields: Any) -> None:
        """Log an event and forward it to all sinks.

        Args:
            name: Dotted event name, e.g. ``"message.copied"``.
            level: Logging level.
            **fields: Structured context for the event.
        """
        if self._log.isEnabledFor(level):
            rendered = " ".join(f"{key}={value}" for key, value in fields.items())
            self._log.log(
                level,
                "%s %s",
                name,
                rendered,
                extra=event_extra(name, fields),
            )
        event = SyncEvent(name=name, level=level, fields=dict(fields))
        for sink in self._sinks:
            sink(event)
