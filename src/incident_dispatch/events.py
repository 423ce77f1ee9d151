"""Event fan-out to dashboards and notification sinks.

Each subscriber owns a FIFO queue. ``publish`` only enqueues, so a slow or
failing subscriber never delays the coordinator or other subscribers.
Events for one incident are published under that incident's lock, which
together with the FIFO queues keeps per-incident order per subscriber.
"""
from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from incident_dispatch.config import SUBSCRIBER_MAX_ATTEMPTS
from incident_dispatch.models import Event

logger = logging.getLogger(__name__)

_STOP = object()


class Subscription:
    """Push delivery: a dedicated thread drains the queue into ``callback``.

    A callback that raises is retried up to ``max_attempts`` times
    (at-least-once), after which the event is dropped and logged.
    """

    def __init__(
        self,
        bus: "EventBus",
        callback: Callable[[Event], None],
        incident_id: Optional[int] = None,
        max_attempts: int = SUBSCRIBER_MAX_ATTEMPTS,
        name: str = "",
    ) -> None:
        self.bus = bus
        self.callback = callback
        self.incident_id = incident_id
        self.max_attempts = max(1, max_attempts)
        self.name = name or getattr(callback, "__name__", "subscriber")
        self.delivered = 0
        self.dropped = 0
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"event-sub-{self.name}", daemon=True)
        self._thread.start()

    def matches(self, event: Event) -> bool:
        return self.incident_id is None or event.incident_id == self.incident_id

    def offer(self, event: Event) -> None:
        if not self._closed.is_set():
            self._queue.put(event)

    def close(self, timeout: Optional[float] = 1.0) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_STOP)
        self.bus._remove(self)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def join(self, timeout: float = 1.0) -> bool:
        """Wait until everything enqueued so far has been handled."""
        done = threading.Event()
        self._queue.put(done)
        return done.wait(timeout)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, threading.Event):
                item.set()
                continue
            self._deliver(item)

    def _deliver(self, event: Event) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.callback(event)
                self.delivered += 1
                return
            except Exception:
                logger.exception(
                    "Subscriber %s failed on %s for incident %s (attempt %d/%d)",
                    self.name, event.kind, event.incident_id, attempt, self.max_attempts,
                )
        self.dropped += 1


class EventStream:
    """Pull delivery for bridges such as a WebSocket handler."""

    def __init__(self, bus: "EventBus", incident_id: Optional[int] = None) -> None:
        self.bus = bus
        self.incident_id = incident_id
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._closed = False

    def matches(self, event: Event) -> bool:
        return self.incident_id is None or event.incident_id == self.incident_id

    def offer(self, event: Event) -> None:
        if not self._closed:
            self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.bus._remove(self)

    def __iter__(self):
        while not self._closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event


class EventBus:
    def __init__(self, max_attempts: int = SUBSCRIBER_MAX_ATTEMPTS) -> None:
        self.max_attempts = max_attempts
        self._subscribers: List[Any] = []
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)

    def subscribe(self, callback: Callable[[Event], None], incident_id: Optional[int] = None, name: str = "") -> Subscription:
        subscription = Subscription(self, callback, incident_id, self.max_attempts, name)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def stream(self, incident_id: Optional[int] = None) -> EventStream:
        stream = EventStream(self, incident_id)
        with self._lock:
            self._subscribers.append(stream)
        return stream

    def publish(self, event: Event) -> Event:
        with self._lock:
            stamped = replace(event, sequence=next(self._sequence))
            targets = [s for s in self._subscribers if s.matches(stamped)]
        for subscriber in targets:
            subscriber.offer(stamped)
        logger.debug("Published %s for incident %s to %d subscribers", stamped.kind, stamped.incident_id, len(targets))
        return stamped

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber.close()

    def _remove(self, subscriber: Any) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


# ---------------------------------------------------------------------------
# Notification sinks
# ---------------------------------------------------------------------------

class NotificationSink(Protocol):
    def offer(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    def offer(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        logger.info("Notification %s -> %s: %s", kind, recipient, payload)


class OutboxNotificationSink:
    """Bounded outbox drained by an external SMS/email/push worker."""

    def __init__(self, maxlen: int = 10_000) -> None:
        self._items: Deque[Tuple[str, str, Dict[str, Any]]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def offer(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._items.append((kind, recipient, payload))

    def drain(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def __len__(self) -> int:
        return len(self._items)
