"""
State-changed events — a small in-process publish/subscribe bus.

The sync engine and the encryption coordinator publish here; any UI or
CLI layer subscribes. The data layer never imports a UI.

Topics used by VaultNote:
    sync.started, sync.phase, sync.completed, sync.failed
    encryption.changed, encryption.locked
    items.changed

Usage:
    bus = EventBus()
    bus.subscribe("sync.*", lambda msg: print(msg.topic, msg.payload))
    bus.publish("sync.started", {"reason": "manual"})
"""

from __future__ import annotations

import fnmatch
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("vaultnote.pubsub")


class TopicMessage(BaseModel):
    """A single published event."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:12])
    topic: str
    payload: dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Callback = Callable[[TopicMessage], None]


class EventBus:
    """Synchronous topic bus with glob-pattern subscriptions.

    Callbacks run inline on the publishing task. A failing callback is
    logged and does not stop delivery to the others.

    Args:
        history_size: How many recent messages to keep for inspection.
    """

    def __init__(self, history_size: int = 100) -> None:
        self._callbacks: dict[str, list[Callback]] = {}
        self._history: deque[TopicMessage] = deque(maxlen=history_size)

    def subscribe(self, pattern: str, callback: Callback) -> None:
        """Register a callback for a topic or glob pattern (e.g. ``sync.*``)."""
        self._callbacks.setdefault(pattern, []).append(callback)
        logger.debug("Subscribed to '%s'", pattern)

    def unsubscribe(self, pattern: str, callback: Optional[Callback] = None) -> bool:
        """Remove one callback, or every callback for the pattern.

        Returns:
            True if anything was removed.
        """
        callbacks = self._callbacks.get(pattern)
        if not callbacks:
            return False
        if callback is None:
            del self._callbacks[pattern]
            return True
        if callback not in callbacks:
            return False
        callbacks.remove(callback)
        if not callbacks:
            del self._callbacks[pattern]
        return True

    def publish(self, topic: str, payload: Optional[dict[str, Any]] = None) -> TopicMessage:
        """Publish an event to every matching subscriber.

        Args:
            topic: Topic name (e.g. ``sync.completed``).
            payload: Event data.

        Returns:
            The published TopicMessage.
        """
        msg = TopicMessage(topic=topic, payload=payload or {})
        self._history.append(msg)

        for pattern, callbacks in list(self._callbacks.items()):
            if not fnmatch.fnmatch(topic, pattern):
                continue
            for callback in list(callbacks):
                try:
                    callback(msg)
                except Exception as exc:
                    logger.error("Subscriber for '%s' failed on '%s': %s", pattern, topic, exc)

        logger.debug("Published '%s'", topic)
        return msg

    def recent(self, topic_pattern: str = "*", limit: int = 20) -> list[TopicMessage]:
        """Most recent messages matching a pattern, newest first."""
        matches = [m for m in self._history if fnmatch.fnmatch(m.topic, topic_pattern)]
        return list(reversed(matches))[:limit]
