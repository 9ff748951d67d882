"""
Tests for status-change publication over Redis pub/sub.
"""

import json
from datetime import datetime

import pytest

from alerts import events as events_module
from alerts.events import STATUS_CHANGE_CHANNEL, publish_status_changes
from audit.differ import StatusChangeEvent


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def publish(self, channel, payload):
        self.published.append((channel, payload))
        return 2

    async def aclose(self):
        self.closed = True


def _event(name="PS-1"):
    return StatusChangeEvent(
        ps_record_id=f"id-{name}",
        ps_record_name=name,
        account_name="Acme Corp",
        previous_status="Submitted",
        status="Completed",
        captured_at=datetime(2026, 3, 1, 8, 0),
    )


class TestPublishStatusChanges:
    @pytest.mark.asyncio
    async def test_publishes_each_event_as_json(self, monkeypatch):
        fake = FakeRedis()
        monkeypatch.setattr(events_module.aioredis, "from_url", lambda url: fake)

        subscribers = await publish_status_changes([_event("PS-1"), _event("PS-2")], redis_url="redis://test")

        assert subscribers == 4
        assert fake.closed is True
        channel, payload = fake.published[0]
        assert channel == STATUS_CHANGE_CHANNEL
        body = json.loads(payload)
        assert body["type"] == "ps_status_change"
        assert body["payload"]["ps_record_name"] == "PS-1"
        assert body["payload"]["captured_at"] == "2026-03-01T08:00:00"

    @pytest.mark.asyncio
    async def test_no_events_skips_connection(self, monkeypatch):
        def _fail(url):
            raise AssertionError("should not connect")

        monkeypatch.setattr(events_module.aioredis, "from_url", _fail)
        assert await publish_status_changes([]) == 0
