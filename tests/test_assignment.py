import logging
import threading

import pytest

from incident_dispatch.assignment import RetryPolicy
from incident_dispatch.coordinator import DispatchCoordinator
from incident_dispatch.errors import (
    HospitalNotFound,
    InvalidTransition,
    NoAmbulanceAvailable,
    ReservationConflict,
    StaleWrite,
)
from incident_dispatch.models import (
    Actor,
    Ambulance,
    AmbulanceStatus,
    Coordinates,
    Device,
    IncidentMode,
    IncidentStatus,
)
from incident_dispatch.storage import InMemoryStorage

from conftest import CRASH_SITE


def _confirmed_incident(coordinator, scheduler, device_uid="DEV-1") -> int:
    result = coordinator.submit_hardware_request(device_uid, "alert", CRASH_SITE)
    scheduler.advance(10)
    return result.incident_id


def test_retry_policy_backs_off_exponentially_with_a_cap() -> None:
    policy = RetryPolicy()
    assert [policy.delay_for(n) for n in range(1, 6)] == [2, 4, 8, 16, 30]
    assert not policy.exhausted(5)
    assert policy.exhausted(6)


def test_confirmed_incident_gets_nearest_ambulance_and_hospital(coordinator, scheduler) -> None:
    coordinator.register_ambulance(Ambulance(id="A-FAR", location=Coordinates(30.3, 31.3)))
    coordinator.register_ambulance(Ambulance(id="A-NEAR", location=Coordinates(30.01, 31.01)))

    incident = coordinator.get_incident(_confirmed_incident(coordinator, scheduler))

    assert incident.status == IncidentStatus.ASSIGNED
    assert incident.mode == IncidentMode.AUTO
    assert incident.assigned_ambulance_id == "A-NEAR"
    assert incident.assigned_hospital_id == "H-1"
    ambulance = coordinator.geo.get_ambulance("A-NEAR")
    assert ambulance.status == AmbulanceStatus.EN_ROUTE_INCIDENT
    assert ambulance.reserved_by == incident.id
    assert coordinator.geo.get_ambulance("A-FAR").is_available


def test_assignment_retries_until_an_ambulance_appears(coordinator, scheduler) -> None:
    incident_id = _confirmed_incident(coordinator, scheduler)

    incident = coordinator.get_incident(incident_id)
    assert incident.status == IncidentStatus.CONFIRMED
    assert incident.assignment_attempts == 1
    assert coordinator.assignment.has_pending_retry(incident_id)

    coordinator.register_ambulance(Ambulance(id="A-1", location=Coordinates(30.01, 31.01)))
    scheduler.advance(2)

    incident = coordinator.get_incident(incident_id)
    assert incident.status == IncidentStatus.ASSIGNED
    assert incident.assigned_ambulance_id == "A-1"
    assert not coordinator.assignment.has_pending_retry(incident_id)


def test_exhausted_retries_flag_the_incident(coordinator, scheduler, sink) -> None:
    incident_id = _confirmed_incident(coordinator, scheduler)

    scheduler.advance(59)
    incident = coordinator.get_incident(incident_id)
    assert incident.assignment_attempts == 5
    assert not incident.no_ambulance_available

    scheduler.advance(1)
    incident = coordinator.get_incident(incident_id)
    assert incident.status == IncidentStatus.CONFIRMED
    assert incident.no_ambulance_available
    assert incident.assignment_attempts == 6
    assert not coordinator.assignment.has_pending_retry(incident_id)
    assert coordinator.flagged_incidents() == [incident]
    assert coordinator.incident_logs(incident_id)[-1].action == "no_ambulance_available"

    operator_events = [
        payload for kind, recipient, payload in sink.drain()
        if kind == "incident_event" and recipient == "operators"
    ]
    assert [event["kind"] for event in operator_events] == ["incident.flagged"]


def test_direct_assign_raises_once_budget_is_spent(coordinator, scheduler) -> None:
    incident_id = _confirmed_incident(coordinator, scheduler)
    scheduler.advance(60)

    with pytest.raises(NoAmbulanceAvailable) as excinfo:
        coordinator.assignment.assign(incident_id)
    assert excinfo.value.incident_id == incident_id


def test_operator_retry_clears_the_flag(coordinator, scheduler) -> None:
    incident_id = _confirmed_incident(coordinator, scheduler)
    scheduler.advance(60)
    coordinator.register_ambulance(Ambulance(id="A-1", location=Coordinates(30.01, 31.01)))

    incident = coordinator.retry_assignment(incident_id, Actor.operator("9"))

    assert incident.status == IncidentStatus.ASSIGNED
    assert not incident.no_ambulance_available
    actions = [entry.action for entry in coordinator.incident_logs(incident_id)]
    assert actions[-2:] == ["assignment_retry_requested", "assigned"]
    assert coordinator.flagged_incidents() == []


def test_operator_retry_without_fleet_restarts_the_backoff(coordinator, scheduler) -> None:
    incident_id = _confirmed_incident(coordinator, scheduler)
    scheduler.advance(60)

    incident = coordinator.retry_assignment(incident_id, Actor.operator("9"))

    assert incident.status == IncidentStatus.CONFIRMED
    assert incident.assignment_attempts == 1
    assert not incident.no_ambulance_available
    assert coordinator.assignment.has_pending_retry(incident_id)


def test_retry_requires_confirmed_incident(coordinator, scheduler) -> None:
    result = coordinator.submit_hardware_request("DEV-1", "alert", CRASH_SITE)
    with pytest.raises(InvalidTransition):
        coordinator.retry_assignment(result.incident_id, Actor.operator("9"))


def test_two_incidents_race_for_one_ambulance(coordinator, scheduler) -> None:
    first = _confirmed_incident(coordinator, scheduler, "DEV-1")
    second = _confirmed_incident(coordinator, scheduler, "DEV-2")
    coordinator.register_ambulance(Ambulance(id="A-1", location=Coordinates(30.01, 31.01)))
    barrier = threading.Barrier(2)
    errors = []

    def assign(incident_id: int) -> None:
        barrier.wait()
        try:
            coordinator.assignment.assign(incident_id)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=assign, args=(i,)) for i in (first, second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    incidents = [coordinator.get_incident(i) for i in (first, second)]
    assigned = [i for i in incidents if i.status == IncidentStatus.ASSIGNED]
    waiting = [i for i in incidents if i.status == IncidentStatus.CONFIRMED]
    assert len(assigned) == 1
    assert len(waiting) == 1
    assert coordinator.geo.get_ambulance("A-1").reserved_by == assigned[0].id
    assert coordinator.assignment.has_pending_retry(waiting[0].id)


class FailingAssignStorage(InMemoryStorage):
    def update_incident(self, incident, expected_version):
        if incident.status == IncidentStatus.ASSIGNED:
            raise StaleWrite("incident", incident.id, expected_version)
        return super().update_incident(incident, expected_version)


def test_failed_incident_update_releases_the_reservation(scheduler, sink) -> None:
    coordinator = DispatchCoordinator(storage=FailingAssignStorage(), scheduler=scheduler, sink=sink)
    coordinator.register_device(Device(uid="DEV-1", account_id="acc-1"))
    coordinator.register_ambulance(Ambulance(id="A-1", location=Coordinates(30.01, 31.01)))

    incident_id = _confirmed_incident(coordinator, scheduler)

    incident = coordinator.get_incident(incident_id)
    assert incident.status == IncidentStatus.CONFIRMED
    assert incident.assigned_ambulance_id is None
    ambulance = coordinator.geo.get_ambulance("A-1")
    assert ambulance.status == AmbulanceStatus.AVAILABLE
    assert ambulance.reserved_by is None
    coordinator.shutdown()


def test_manual_assign_skips_confirmation(coordinator, scheduler) -> None:
    coordinator.register_ambulance(Ambulance(id="A-1", location=Coordinates(30.3, 31.3)))
    result = coordinator.submit_hardware_request("DEV-1", "alert", CRASH_SITE)

    incident = coordinator.manual_assign(result.incident_id, "A-1", "H-1", Actor.operator("7"))

    assert incident.status == IncidentStatus.ASSIGNED
    assert incident.mode == IncidentMode.MANUAL
    assert incident.confirmed_at is None
    assert coordinator.geo.get_ambulance("A-1").reserved_by == incident.id
    assert str(coordinator.incident_logs(incident.id)[-1].actor) == "operator:7"

    scheduler.advance(10)
    assert coordinator.get_incident(incident.id).status == IncidentStatus.ASSIGNED
    assert len(coordinator.timers) == 0


def test_manual_assign_on_flagged_incident(coordinator, scheduler) -> None:
    incident_id = _confirmed_incident(coordinator, scheduler)
    scheduler.advance(60)
    coordinator.register_ambulance(Ambulance(id="A-9", location=Coordinates(31.5, 32.5)))

    incident = coordinator.manual_assign(incident_id, "A-9", "H-1", Actor.operator("7"))

    assert incident.assigned_ambulance_id == "A-9"
    assert not incident.no_ambulance_available


def test_manual_assign_rejections(coordinator, scheduler) -> None:
    coordinator.register_ambulance(Ambulance(id="A-BUSY", location=CRASH_SITE, status=AmbulanceStatus.BUSY))
    result = coordinator.submit_hardware_request("DEV-1", "alert", CRASH_SITE)

    with pytest.raises(ReservationConflict):
        coordinator.manual_assign(result.incident_id, "A-BUSY", "H-1", Actor.operator("7"))
    with pytest.raises(HospitalNotFound):
        coordinator.manual_assign(result.incident_id, "A-BUSY", "H-NOPE", Actor.operator("7"))
    assert coordinator.get_incident(result.incident_id).status == IncidentStatus.PENDING

    coordinator.cancel_incident(result.incident_id, Actor.operator("7"))
    with pytest.raises(InvalidTransition):
        coordinator.manual_assign(result.incident_id, "A-BUSY", "H-1", Actor.operator("7"))


def test_rolled_back_reservation_is_broadcast(scheduler, sink) -> None:
    coordinator = DispatchCoordinator(storage=FailingAssignStorage(), scheduler=scheduler, sink=sink)
    coordinator.register_device(Device(uid="DEV-1", account_id="acc-1"))
    coordinator.register_ambulance(Ambulance(id="A-1", location=Coordinates(30.01, 31.01)))
    feed = coordinator.stream()

    _confirmed_incident(coordinator, scheduler)

    fleet = [event.status for event in feed.drain() if event.kind == "ambulance.updated"]
    assert fleet == ["en_route_incident", "available"]
    coordinator.shutdown()


def test_refused_manual_commands_are_logged(coordinator, scheduler, caplog) -> None:
    coordinator.register_ambulance(Ambulance(id="A-BUSY", location=CRASH_SITE, status=AmbulanceStatus.BUSY))
    pending = coordinator.submit_hardware_request("DEV-1", "alert", CRASH_SITE).incident_id

    with caplog.at_level(logging.WARNING, logger="incident_dispatch"):
        with pytest.raises(ReservationConflict):
            coordinator.manual_assign(pending, "A-BUSY", "H-1", Actor.operator("7"))
        with pytest.raises(InvalidTransition):
            coordinator.retry_assignment(pending, Actor.operator("7"))

    warnings = [record.getMessage() for record in caplog.records if record.levelno == logging.WARNING]
    assert any("A-BUSY" in message and f"incident {pending}" in message and "operator:7" in message for message in warnings)
    assert any(f"incident {pending}: pending -> assigned by operator:7" in message for message in warnings)
