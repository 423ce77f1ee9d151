"""Schedulers used for confirmation deadlines and assignment retries.

``ThreadingScheduler`` runs callbacks on ``threading.Timer`` threads against
the wall clock. ``ManualScheduler`` keeps a simulated clock that only moves
when ``advance`` is called, which makes the 10-second confirmation window and
retry backoff reproducible in tests and in the demo.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from incident_dispatch.models import utcnow

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    def now(self) -> datetime: ...

    def call_later(self, delay_seconds: float, callback: Callable[[], None], label: str = "") -> "ScheduledCall": ...


class ScheduledCall:
    """Handle for a delayed callback that runs or is cancelled exactly once."""

    def __init__(self, due: datetime, callback: Callable[[], None], label: str = "") -> None:
        self.due = due
        self.label = label
        self._callback = callback
        self._lock = threading.Lock()
        self._state = "armed"
        self._timer: Optional[threading.Timer] = None

    @property
    def state(self) -> str:
        return self._state

    def cancel(self) -> bool:
        """Return True if this call cancelled the callback before it ran."""
        with self._lock:
            if self._state != "armed":
                return False
            self._state = "cancelled"
        if self._timer is not None:
            self._timer.cancel()
        return True

    def run(self) -> None:
        with self._lock:
            if self._state != "armed":
                return
            self._state = "fired"
        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled call %s failed", self.label or self._callback)


class ThreadingScheduler:
    def now(self) -> datetime:
        return utcnow()

    def call_later(self, delay_seconds: float, callback: Callable[[], None], label: str = "") -> ScheduledCall:
        delay = max(0.0, delay_seconds)
        call = ScheduledCall(self.now() + timedelta(seconds=delay), callback, label)
        timer = threading.Timer(delay, call.run)
        timer.daemon = True
        call._timer = timer
        timer.start()
        return call


class ManualScheduler:
    """Simulated clock. Due callbacks run on the thread calling ``advance``."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or utcnow()
        self._queue: List[Tuple[datetime, int, ScheduledCall]] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay_seconds: float, callback: Callable[[], None], label: str = "") -> ScheduledCall:
        with self._lock:
            call = ScheduledCall(self._now + timedelta(seconds=max(0.0, delay_seconds)), callback, label)
            heapq.heappush(self._queue, (call.due, next(self._counter), call))
        return call

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due.

        Returns the number of callbacks that ran.
        """
        with self._lock:
            target = self._now + timedelta(seconds=seconds)
        ran = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    self._now = target
                    return ran
                due, _, call = heapq.heappop(self._queue)
                self._now = max(self._now, due)
            if call.state == "armed":
                call.run()
                ran += 1

    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, call in self._queue if call.state == "armed")
