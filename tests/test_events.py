import threading

from incident_dispatch.events import EventBus, OutboxNotificationSink
from incident_dispatch.models import Event

from conftest import START


def _event(incident_id, kind="incident.pending") -> Event:
    return Event(incident_id=incident_id, status="pending", timestamp=START, payload={}, kind=kind)


def test_subscribers_receive_events_in_publish_order() -> None:
    bus = EventBus()
    received = []
    subscription = bus.subscribe(received.append, name="dashboard")

    for kind in ("incident.pending", "incident.confirmed", "incident.assigned"):
        bus.publish(_event(1, kind))

    assert subscription.join()
    assert [event.kind for event in received] == ["incident.pending", "incident.confirmed", "incident.assigned"]
    assert [event.sequence for event in received] == [1, 2, 3]
    bus.close()


def test_incident_filter() -> None:
    bus = EventBus()
    received = []
    subscription = bus.subscribe(received.append, incident_id=2)

    bus.publish(_event(1))
    bus.publish(_event(2))

    subscription.join()
    assert [event.incident_id for event in received] == [2]
    bus.close()


def test_flaky_subscriber_gets_redelivery() -> None:
    bus = EventBus(max_attempts=3)
    calls = []

    def flaky(event: Event) -> None:
        calls.append(event.sequence)
        if len(calls) == 1:
            raise RuntimeError("socket hiccup")

    subscription = bus.subscribe(flaky)
    bus.publish(_event(1))
    subscription.join()

    assert calls == [1, 1]
    assert subscription.delivered == 1
    assert subscription.dropped == 0
    bus.close()


def test_broken_subscriber_is_isolated() -> None:
    bus = EventBus(max_attempts=2)
    healthy = []
    release = threading.Event()

    def broken(event: Event) -> None:
        raise RuntimeError("always fails")

    def slow(event: Event) -> None:
        release.wait(2)

    failing = bus.subscribe(broken)
    blocked = bus.subscribe(slow)
    good = bus.subscribe(healthy.append)

    bus.publish(_event(1))
    bus.publish(_event(1, "incident.confirmed"))

    assert good.join()
    assert len(healthy) == 2
    failing.join()
    assert failing.dropped == 2
    release.set()
    assert blocked.join()
    bus.close()


def test_streams_drain_and_close() -> None:
    bus = EventBus()
    stream = bus.stream(incident_id=5)
    assert bus.subscriber_count == 1

    bus.publish(_event(5))
    bus.publish(_event(6))

    assert [event.incident_id for event in stream.drain()] == [5]
    assert stream.get(timeout=0.01) is None

    stream.close()
    assert bus.subscriber_count == 0
    bus.publish(_event(5))
    assert stream.drain() == []


def test_close_stops_push_subscriptions() -> None:
    bus = EventBus()
    received = []
    subscription = bus.subscribe(received.append)

    subscription.close()
    bus.publish(_event(1))

    assert received == []
    assert bus.subscriber_count == 0


def test_outbox_is_bounded() -> None:
    outbox = OutboxNotificationSink(maxlen=2)
    for n in range(3):
        outbox.offer("incident_event", "account:1", {"n": n})

    assert len(outbox) == 2
    assert [payload["n"] for _, _, payload in outbox.drain()] == [1, 2]
    assert len(outbox) == 0
