from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

import redis

from . import config

_log = logging.getLogger("travel.events")

DOMAIN = "travel"


class EventPublisher:
    """
    Domain events for the booking sync (booking_synced, sync_failed, ...).

    Payloads go to Redis Pub/Sub on `events:<domain>` when enabled; with
    events off, or Redis unreachable, they become a structured log line.
    """

    def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        self._url = url or config.EVENTS_REDIS_URL
        self._enabled = config.EVENTS_ENABLED if enabled is None else enabled
        self._client = None
        if self._enabled:
            try:
                self._client = redis.from_url(self._url)
            except Exception as e:
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    def publish(self, domain: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = {
            "domain": domain,
            "type": event_type,
            "ts_ms": int(time.time() * 1000),
            "payload": payload,
        }
        if self.enabled:
            try:
                self._client.publish(f"events:{domain}", json.dumps(data, default=str))
                return data
            except Exception as e:
                _log.warning("events: redis publish failed: %s", e)
        _log.info("event %s", event_type, extra={"event": data})
        return data


_publisher: Optional[EventPublisher] = None


def get_publisher() -> EventPublisher:
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher


def set_publisher(pub: Optional[EventPublisher]) -> None:
    global _publisher
    _publisher = pub


def emit_event(event_type: str, payload: Dict[str, Any], domain: str = DOMAIN) -> None:
    """Best-effort; never raises into the sync path."""
    try:
        get_publisher().publish(domain, event_type, payload)
    except Exception:
        _log.exception("events: emit %s failed", event_type)
