from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from incident_dispatch.scheduling import ScheduledCall, Scheduler

logger = logging.getLogger(__name__)


class ConfirmationTimer:
    """Countdown for one pending incident.

    ``on_expire`` receives the incident id when the deadline elapses. The
    timer fires at most once and ``cancel`` is safe to call at any time,
    including after it fired.
    """

    def __init__(
        self,
        incident_id: int,
        deadline: datetime,
        scheduler: Scheduler,
        on_expire: Callable[[int], None],
    ) -> None:
        self.incident_id = incident_id
        self.deadline = deadline
        self.scheduler = scheduler
        self.on_expire = on_expire
        self._call: Optional[ScheduledCall] = None

    def start(self) -> "ConfirmationTimer":
        delay = (self.deadline - self.scheduler.now()).total_seconds()
        self._call = self.scheduler.call_later(
            delay, self._fire, label=f"confirm-incident-{self.incident_id}"
        )
        return self

    def cancel(self) -> bool:
        if self._call is None:
            return False
        return self._call.cancel()

    @property
    def state(self) -> str:
        return self._call.state if self._call is not None else "new"

    def _fire(self) -> None:
        logger.debug("Confirmation deadline reached for incident %s", self.incident_id)
        self.on_expire(self.incident_id)


class ConfirmationTimers:
    """Owns the single live timer of each pending incident."""

    def __init__(self, scheduler: Scheduler, window_seconds: float) -> None:
        self.scheduler = scheduler
        self.window_seconds = window_seconds
        self._timers: Dict[int, ConfirmationTimer] = {}
        self._lock = threading.Lock()

    def deadline_for(self, created_at: datetime) -> datetime:
        return created_at + timedelta(seconds=self.window_seconds)

    def start(self, incident_id: int, deadline: datetime, on_expire: Callable[[int], None]) -> ConfirmationTimer:
        timer = ConfirmationTimer(incident_id, deadline, self.scheduler, on_expire)
        with self._lock:
            previous = self._timers.pop(incident_id, None)
            self._timers[incident_id] = timer
        if previous is not None:
            previous.cancel()
        return timer.start()

    def discard(self, incident_id: int) -> bool:
        """Drop the incident's timer. Returns True if it had not fired yet."""
        with self._lock:
            timer = self._timers.pop(incident_id, None)
        if timer is None:
            return False
        return timer.cancel()

    def get(self, incident_id: int) -> Optional[ConfirmationTimer]:
        with self._lock:
            return self._timers.get(incident_id)

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)
