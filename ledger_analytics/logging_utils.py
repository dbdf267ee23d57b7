"""Single-line JSON log events.

Every operational event is one JSON object with an ``event`` name plus
flat fields, so log aggregators can filter on ``feed_id`` or ``tx_id``
without parsing free text.  ``EventLogger`` binds fields that hold for a
whole component (the feed a loop pumps, for instance) so call sites only
pass what is specific to the event.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict


def render_event(event: str, fields: Dict[str, Any]) -> str:
    # Values json cannot encode (datetimes, Decimals, exceptions) are stringified.
    return json.dumps({"event": event, **fields}, ensure_ascii=True, sort_keys=True, default=str)


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log *event* with *fields* as one JSON line."""
    if logger.isEnabledFor(level):
        logger.log(level, render_event(event, fields))


class EventLogger(logging.LoggerAdapter):
    """Logger adapter whose ``extra`` mapping is merged into every event.

    Fields given at the call site win over bound ones.
    """

    def __init__(self, logger: logging.Logger, **context: Any) -> None:
        super().__init__(logger, context)

    def bind(self, **context: Any) -> "EventLogger":
        return EventLogger(self.logger, **{**self.extra, **context})

    def event(self, level: int, event: str, **fields: Any) -> None:
        if self.isEnabledFor(level):
            self.logger.log(level, render_event(event, {**self.extra, **fields}))
