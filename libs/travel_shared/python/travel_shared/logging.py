from __future__ import annotations

import json
import logging
import os
from .request_id import get_request_id

# Structured fields the sync engine attaches via `extra=`.
CONTEXT_FIELDS = (
    "booking_id",
    "trip_key",
    "table",
    "step",
    "lock_status",
    "reason",
    "event",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": get_request_id(),
        }
        for field in CONTEXT_FIELDS:
            val = getattr(record, field, None)
            if val is not None and val != "":
                data[field] = val
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_json_logging(level: str | None = None):
    lvl = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(lvl)
