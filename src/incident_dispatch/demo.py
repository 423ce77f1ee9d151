from __future__ import annotations

import logging

from incident_dispatch.coordinator import DispatchCoordinator
from incident_dispatch.events import OutboxNotificationSink
from incident_dispatch.models import Actor, Ambulance, Coordinates, Device, Hospital
from incident_dispatch.scheduling import ManualScheduler


def build_demo_coordinator(scheduler: ManualScheduler, sink: OutboxNotificationSink) -> DispatchCoordinator:
    coordinator = DispatchCoordinator(scheduler=scheduler, sink=sink)
    coordinator.register_hospital(
        Hospital(id="HOSP-1", name="Cairo University Hospital", account_id="7", location=Coordinates(30.03, 31.21))
    )
    coordinator.register_hospital(
        Hospital(id="HOSP-2", name="Helwan General", account_id="8", location=Coordinates(29.85, 31.33))
    )
    coordinator.register_ambulance(Ambulance(id="AMB-1", call_sign="Alpha", location=Coordinates(30.01, 31.01)))
    coordinator.register_ambulance(Ambulance(id="AMB-2", call_sign="Bravo", location=Coordinates(31.0, 32.0)))
    coordinator.register_device(Device(uid="DEV-001", account_id="42", vehicle="Toyota Corolla 2019"))
    coordinator.register_device(Device(uid="DEV-002", account_id="43", vehicle="Hyundai Elantra 2021"))
    return coordinator


def _step_towards(origin: Coordinates, target: Coordinates, fraction: float) -> Coordinates:
    return Coordinates(
        latitude=origin.latitude + (target.latitude - origin.latitude) * fraction,
        longitude=origin.longitude + (target.longitude - origin.longitude) * fraction,
    )


def main() -> None:
    logging.basicConfig(level=logging.WARNING)
    scheduler = ManualScheduler()
    sink = OutboxNotificationSink()
    coordinator = build_demo_coordinator(scheduler, sink)
    feed = coordinator.stream()

    crash_site = Coordinates(30.0, 31.0)
    first = coordinator.submit_hardware_request("DEV-001", "alert", crash_site, '{"impact_g": 7.4}')
    scheduler.advance(2)
    duplicate = coordinator.submit_hardware_request("DEV-001", "alert", crash_site)
    false_alarm = coordinator.submit_hardware_request("DEV-002", "alert", Coordinates(30.2, 31.2))
    scheduler.advance(1)
    coordinator.submit_hardware_request("DEV-002", "cancel", None)
    scheduler.advance(10)

    incident = coordinator.get_incident(first.incident_id)
    ambulance = coordinator.geo.get_ambulance(incident.assigned_ambulance_id)
    for step in (0.5, 1.0):
        coordinator.update_ambulance(ambulance.id, _step_towards(ambulance.location, crash_site, step))
    coordinator.start_transport(incident.id, Actor.operator("1"))
    coordinator.complete_incident(incident.id, Actor.operator("1"))

    print("=== Incident Dispatch Demo ===")
    print(f"Alert accepted: {first.accepted} -> incident {first.incident_id}")
    print(f"Duplicate alert folded into incident {duplicate.incident_id} ({duplicate.reason})")
    print(f"False alarm incident {false_alarm.incident_id}: {coordinator.get_incident(false_alarm.incident_id).status.value}")

    incident = coordinator.get_incident(first.incident_id)
    print(f"\nIncident {incident.id}: {incident.status.value}")
    print(f" - ambulance: {incident.assigned_ambulance_id}")
    print(f" - hospital: {incident.assigned_hospital_id}")

    print("\nAudit trail:")
    for entry in coordinator.incident_logs(incident.id):
        print(f" - {entry.created_at:%H:%M:%S} {entry.action} by {entry.actor}: {entry.note}")

    print("\nEvents:")
    for event in feed.drain():
        print(f" - #{event.sequence} {event.kind} incident={event.incident_id} status={event.status}")

    print(f"\nNotifications queued: {len(sink)}")
    coordinator.shutdown()


if __name__ == "__main__":
    main()
