"""Tests for the in-process event bus."""

from __future__ import annotations

import pytest

from vaultnote.pubsub import EventBus, TopicMessage


@pytest.fixture
def bus() -> EventBus:
    return EventBus(history_size=5)


# ---------------------------------------------------------------------------
# Publish / subscribe
# ---------------------------------------------------------------------------


class TestPublish:
    """Tests for delivery to subscribers."""

    def test_exact_topic(self, bus: EventBus) -> None:
        received: list[TopicMessage] = []
        bus.subscribe("sync.started", received.append)
        bus.publish("sync.started", {"reason": "manual"})
        assert [m.payload for m in received] == [{"reason": "manual"}]

    def test_wildcard_pattern(self, bus: EventBus) -> None:
        received: list[str] = []
        bus.subscribe("sync.*", lambda m: received.append(m.topic))
        bus.publish("sync.started")
        bus.publish("sync.completed")
        bus.publish("encryption.changed")
        assert received == ["sync.started", "sync.completed"]

    def test_failing_callback_does_not_stop_others(self, bus: EventBus) -> None:
        """A raising subscriber is logged; later subscribers still run."""
        received: list[str] = []

        def broken(msg: TopicMessage) -> None:
            raise RuntimeError("boom")

        bus.subscribe("items.changed", broken)
        bus.subscribe("items.changed", lambda m: received.append(m.topic))
        bus.publish("items.changed")
        assert received == ["items.changed"]

    def test_publish_returns_message(self, bus: EventBus) -> None:
        msg = bus.publish("sync.failed", {"error": "x"})
        assert msg.topic == "sync.failed"
        assert msg.message_id


class TestUnsubscribe:
    def test_remove_one_callback(self, bus: EventBus) -> None:
        received: list[str] = []
        cb = lambda m: received.append(m.topic)  # noqa: E731
        bus.subscribe("sync.*", cb)
        assert bus.unsubscribe("sync.*", cb)
        bus.publish("sync.started")
        assert received == []

    def test_remove_unknown(self, bus: EventBus) -> None:
        assert not bus.unsubscribe("nothing.*")


class TestHistory:
    def test_recent_newest_first(self, bus: EventBus) -> None:
        for i in range(3):
            bus.publish("sync.phase", {"i": i})
        assert [m.payload["i"] for m in bus.recent("sync.*")] == [2, 1, 0]

    def test_history_bounded(self, bus: EventBus) -> None:
        for i in range(8):
            bus.publish("t", {"i": i})
        assert len(bus.recent(limit=100)) == 5
