import threading
from datetime import timedelta

from incident_dispatch.scheduling import ManualScheduler, ThreadingScheduler
from incident_dispatch.timers import ConfirmationTimers

from conftest import START


def test_manual_scheduler_runs_due_callbacks_in_order() -> None:
    scheduler = ManualScheduler(START)
    fired = []
    scheduler.call_later(5, lambda: fired.append("late"))
    scheduler.call_later(1, lambda: fired.append("early"))

    assert scheduler.advance(0.5) == 0
    assert scheduler.advance(4.5) == 2
    assert fired == ["early", "late"]
    assert scheduler.now() == START + timedelta(seconds=5)


def test_callbacks_scheduled_while_advancing_run_in_the_same_advance() -> None:
    scheduler = ManualScheduler(START)
    fired = []

    def first() -> None:
        fired.append(scheduler.now())
        scheduler.call_later(2, lambda: fired.append(scheduler.now()))

    scheduler.call_later(1, first)
    scheduler.advance(10)

    assert fired == [START + timedelta(seconds=1), START + timedelta(seconds=3)]


def test_scheduled_call_cancels_or_fires_once() -> None:
    scheduler = ManualScheduler(START)
    fired = []
    call = scheduler.call_later(1, lambda: fired.append(1))

    assert call.cancel() is True
    assert call.cancel() is False
    scheduler.advance(2)
    assert fired == []

    call = scheduler.call_later(1, lambda: fired.append(2))
    scheduler.advance(1)
    assert call.state == "fired"
    assert call.cancel() is False
    assert fired == [2]


def test_failing_callback_does_not_stop_the_clock() -> None:
    scheduler = ManualScheduler(START)
    fired = []

    def explode() -> None:
        raise RuntimeError("boom")

    scheduler.call_later(1, explode)
    scheduler.call_later(2, lambda: fired.append("after"))

    assert scheduler.advance(3) == 2
    assert fired == ["after"]


def test_threading_scheduler_fires_on_a_timer_thread() -> None:
    done = threading.Event()
    ThreadingScheduler().call_later(0.01, done.set)
    assert done.wait(2)


def test_confirmation_timer_expires_at_the_deadline() -> None:
    scheduler = ManualScheduler(START)
    timers = ConfirmationTimers(scheduler, window_seconds=10)
    expired = []

    deadline = timers.deadline_for(scheduler.now())
    assert deadline == START + timedelta(seconds=10)
    timers.start(1, deadline, expired.append)

    scheduler.advance(9.999)
    assert expired == []
    scheduler.advance(0.001)
    assert expired == [1]
    assert timers.get(1).state == "fired"


def test_discarded_timer_never_fires() -> None:
    scheduler = ManualScheduler(START)
    timers = ConfirmationTimers(scheduler, window_seconds=10)
    expired = []
    timers.start(1, timers.deadline_for(scheduler.now()), expired.append)

    assert timers.discard(1) is True
    assert timers.discard(1) is False
    scheduler.advance(20)

    assert expired == []
    assert len(timers) == 0


def test_restarting_a_timer_replaces_the_previous_one() -> None:
    scheduler = ManualScheduler(START)
    timers = ConfirmationTimers(scheduler, window_seconds=10)
    expired = []
    timers.start(1, START + timedelta(seconds=5), expired.append)
    timers.start(1, START + timedelta(seconds=10), expired.append)

    scheduler.advance(30)

    assert expired == [1]
    assert scheduler.pending() == 0
