"""In-process change notifications with explicit subscription handles."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any
from uuid import uuid4

from duespoll.obs import inject_traceparent

logger = logging.getLogger(__name__)

APPROVALS_TOPIC = "approvals"
AUTH_TOPIC = "auth"


def poll_topic(poll_id: str) -> str:
    return f"poll:{poll_id}"


def voter_topic(voter_id: str) -> str:
    return f"voter:{voter_id}"


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """A document or collection change pushed to subscribers."""

    topic: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    traceparent: str | None = None


Listener = Callable[[ChangeEvent], None]


class Subscription:
    """Cancellation handle returned by :meth:`ChangeFeed.subscribe`.

    Usable as a context manager so the listener is always released.
    """

    def __init__(self, feed: "ChangeFeed", topic: str, token: str) -> None:
        self._feed = feed
        self.topic = topic
        self._token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._feed._remove(self.topic, self._token)
        self._active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class ChangeFeed:
    """Thread-safe topic based fan-out."""

    def __init__(self) -> None:
        self._listeners: dict[str, dict[str, Listener]] = {}
        self._lock = Lock()

    def subscribe(self, topic: str, listener: Listener) -> Subscription:
        token = uuid4().hex
        with self._lock:
            self._listeners.setdefault(topic, {})[token] = listener
        return Subscription(self, topic, token)

    def publish(self, topic: str, kind: str, **payload: Any) -> ChangeEvent:
        event = ChangeEvent(
            topic=topic,
            kind=kind,
            payload=payload,
            traceparent=inject_traceparent({}).get("traceparent"),
        )
        with self._lock:
            listeners = list(self._listeners.get(topic, {}).values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # a failing subscriber must not break the writer
                logger.exception("change listener failed", extra={"topic": topic, "kind": kind})
        return event

    def listener_count(self, topic: str) -> int:
        with self._lock:
            return len(self._listeners.get(topic, {}))

    def _remove(self, topic: str, token: str) -> None:
        with self._lock:
            listeners = self._listeners.get(topic)
            if not listeners:
                return
            listeners.pop(token, None)
            if not listeners:
                self._listeners.pop(topic, None)

    def reset(self) -> None:
        with self._lock:
            self._listeners.clear()


change_feed = ChangeFeed()


__all__ = [
    "APPROVALS_TOPIC",
    "AUTH_TOPIC",
    "ChangeEvent",
    "ChangeFeed",
    "Listener",
    "Subscription",
    "change_feed",
    "poll_topic",
    "voter_topic",
]
