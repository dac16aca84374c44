"""
Event/alert broadcaster.

Fans events out to subscribers through bounded per-subscriber buffers.
Publishing never blocks: when a buffer is full its oldest event is dropped
and counted. In-process listeners are called synchronously.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator

import structlog

from ..clock import Clock, SystemClock
from ..errors import ValidationError

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    VIOLATION = "violation"
    RISK_CHANGE = "risk_change"
    DECISION = "decision"


@dataclass(frozen=True)
class Event:
    event_type: EventType
    subject_id: str
    timestamp: float
    payload: dict[str, Any] = field(default_factory=dict)
    severity: str | None = None
    event_id: str = field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "subject_id": self.subject_id,
            "severity": self.severity,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }


Listener = Callable[[Event], None]


def _parse_types(event_types: Iterable[EventType | str] | None) -> frozenset[EventType] | None:
    if event_types is None:
        return None
    try:
        return frozenset(EventType(t) for t in event_types)
    except ValueError as e:
        raise ValidationError(str(e), {"allowed": [t.value for t in EventType]}) from None


class Subscription:
    """A bounded event stream for one consumer."""

    def __init__(self, broadcaster: EventBroadcaster, event_types: frozenset[EventType] | None, buffer_size: int):
        self._broadcaster = broadcaster
        self.event_types = event_types
        self.buffer_size = buffer_size
        self._buffer: deque[Event] = deque()
        self._cond = threading.Condition()
        self.dropped = 0
        self.closed = False

    def wants(self, event: Event) -> bool:
        return self.event_types is None or event.event_type in self.event_types

    def _offer(self, event: Event) -> None:
        with self._cond:
            if self.closed:
                return
            if len(self._buffer) >= self.buffer_size:
                self._buffer.popleft()
                self.dropped += 1
            self._buffer.append(event)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None on timeout or once closed and empty."""
        with self._cond:
            if not self._buffer and not self.closed:
                self._cond.wait(timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> list[Event]:
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def pending(self) -> int:
        with self._cond:
            return len(self._buffer)

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()
        self._broadcaster.unsubscribe(self)

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class EventBroadcaster:
    """Publishes violation, risk-change and decision events."""

    def __init__(self, clock: Clock | None = None, buffer_size: int = 256):
        if buffer_size < 1:
            raise ValidationError("buffer_size must be positive")
        self.clock = clock or SystemClock()
        self.buffer_size = buffer_size
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[Listener, frozenset[EventType] | None]] = []
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(
        self, event_types: Iterable[EventType | str] | None = None, buffer_size: int | None = None
    ) -> Subscription:
        size = buffer_size or self.buffer_size
        if size < 1:
            raise ValidationError("buffer_size must be positive")
        sub = Subscription(self, _parse_types(event_types), size)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def add_listener(self, callback: Listener, event_types: Iterable[EventType | str] | None = None) -> None:
        with self._lock:
            self._listeners.append((callback, _parse_types(event_types)))

    def remove_listener(self, callback: Listener) -> None:
        with self._lock:
            self._listeners = [(cb, t) for cb, t in self._listeners if cb != callback]

    def emit(
        self,
        event_type: EventType | str,
        subject_id: str,
        payload: dict[str, Any] | None = None,
        severity: str | None = None,
    ) -> Event:
        """Build an event stamped with the current time and publish it."""
        event = Event(
            event_type=EventType(event_type),
            subject_id=subject_id,
            timestamp=self.clock.now(),
            payload=dict(payload or {}),
            severity=severity,
        )
        self.publish(event)
        return event

    def publish(self, event: Event) -> int:
        """Deliver to every interested subscriber; returns the delivery count."""
        with self._lock:
            subs = list(self._subscriptions)
            listeners = list(self._listeners)
            self.published += 1

        delivered = 0
        for sub in subs:
            if sub.wants(event):
                sub._offer(event)
                delivered += 1

        for callback, types in listeners:
            if types is not None and event.event_type not in types:
                continue
            try:
                callback(event)
            except Exception:
                # A failing listener does not stop delivery to the rest.
                logger.exception("event_listener_failed", event_type=event.event_type.value,
                                 subject_id=event.subject_id)
            delivered += 1

        logger.debug("event_published", event_type=event.event_type.value, subject_id=event.subject_id,
                     delivered=delivered)
        return delivered

    def stats(self) -> dict[str, Any]:
        with self._lock:
            subs = list(self._subscriptions)
            listeners = len(self._listeners)
            published = self.published
        return {
            "published": published,
            "subscribers": len(subs),
            "listeners": listeners,
            "dropped": sum(s.dropped for s in subs),
        }
