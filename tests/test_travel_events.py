from __future__ import annotations

import json
import logging

import apps.travel.app.events as ev  # type: ignore[import]


class _FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, json.loads(message)))
        return 1


def _with_client(client) -> ev.EventPublisher:
    pub = ev.EventPublisher(enabled=False)
    pub._enabled = True
    pub._client = client
    return pub


def test_disabled_publisher_logs_event(caplog):
    pub = ev.EventPublisher(enabled=False)
    assert not pub.enabled
    with caplog.at_level(logging.INFO, logger="travel.events"):
        data = pub.publish("travel", "booking_synced", {"booking_id": 1})
    assert data["domain"] == "travel"
    assert data["type"] == "booking_synced"
    assert data["payload"] == {"booking_id": 1}
    assert any(getattr(r, "event", None) == data for r in caplog.records)


def test_publish_goes_to_domain_channel():
    client = _FakeRedis()
    pub = _with_client(client)
    pub.publish("travel", "sync_failed", {"booking_id": 5, "error": "boom"})
    assert len(client.published) == 1
    channel, message = client.published[0]
    assert channel == "events:travel"
    assert message["type"] == "sync_failed"
    assert message["payload"]["booking_id"] == 5


def test_redis_failure_falls_back_to_log(caplog):
    pub = _with_client(_FakeRedis(fail=True))
    with caplog.at_level(logging.INFO, logger="travel.events"):
        data = pub.publish("travel", "booking_synced", {"booking_id": 2})
    assert data["payload"] == {"booking_id": 2}
    messages = [r.getMessage() for r in caplog.records]
    assert any("redis publish failed" in m for m in messages)
    assert any(m == "event booking_synced" for m in messages)


class _BrokenPublisher:
    def publish(self, domain, event_type, payload):
        raise RuntimeError("publisher exploded")


def test_emit_event_never_raises(caplog):
    ev.set_publisher(_BrokenPublisher())
    try:
        with caplog.at_level(logging.ERROR, logger="travel.events"):
            ev.emit_event("booking_synced", {"booking_id": 3})
    finally:
        ev.set_publisher(None)
    assert any("emit booking_synced failed" in r.getMessage() for r in caplog.records)


def test_emit_event_uses_installed_publisher():
    client = _FakeRedis()
    ev.set_publisher(_with_client(client))
    try:
        ev.emit_event("settings_marked", {"id": 1})
    finally:
        ev.set_publisher(None)
    assert client.published[0][0] == "events:travel"
    assert client.published[0][1]["type"] == "settings_marked"
