from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .context import current_log_context

CORE_KEYS = frozenset({"ts", "level", "logger", "event", "error"})


class RunJsonFormatter(logging.Formatter):
    """One JSON object per line.

    Records carry an event name as their message. The current run context is
    merged in, then the record's ``extra_fields``; an extra field may override
    a context field (the breaker logs the provider it guards) but never a core key.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, object] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(current_log_context().fields())

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            payload.update((key, value) for key, value in extra_fields.items() if key not in CORE_KEYS)

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            payload["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stack": self.formatException(record.exc_info),
            }

        return json.dumps(payload, ensure_ascii=False, default=str)
