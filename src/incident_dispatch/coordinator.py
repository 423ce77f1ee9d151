from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from incident_dispatch.assignment import AssignmentEngine, RetryPolicy
from incident_dispatch.config import DispatchSettings
from incident_dispatch.errors import DispatchError, InvalidTransition, NoAmbulanceAvailable
from incident_dispatch.events import EventBus, EventStream, LoggingNotificationSink, NotificationSink, Subscription
from incident_dispatch.geo import GeoIndex
from incident_dispatch.ingest import CancelIncident, CreateIncident, IngestGateway
from incident_dispatch.models import (
    Actor,
    Ambulance,
    AmbulanceStatus,
    CancelOutcome,
    CancelResult,
    Coordinates,
    Device,
    Event,
    Hospital,
    Incident,
    IncidentLog,
    IncidentStatus,
    IngestResult,
)
from incident_dispatch.scheduling import Scheduler, ThreadingScheduler
from incident_dispatch.state_machine import OPERATORS_RECIPIENT, IncidentStateMachine
from incident_dispatch.storage import InMemoryStorage, Storage
from incident_dispatch.timers import ConfirmationTimers

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """Incident lifecycle coordinator.

    Hardware requests enter through the ingest gateway, pending incidents
    wait out the confirmation window, confirmed incidents go to the
    assignment engine, and every transition is fanned out on the event bus.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[DispatchSettings] = None,
        sink: Optional[NotificationSink] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.storage = storage or InMemoryStorage()
        self.scheduler = scheduler or ThreadingScheduler()
        self.sink = sink or LoggingNotificationSink()
        self.bus = bus or EventBus(self.settings.subscriber_max_attempts)
        self.geo = GeoIndex(self.storage, self.settings.search_radius_km, on_change=self._publish_ambulance)
        self.timers = ConfirmationTimers(self.scheduler, self.settings.confirmation_window_seconds)
        self.state_machine = IncidentStateMachine(self.storage, self.bus, self.sink, self.scheduler)
        self.assignment = AssignmentEngine(
            self.state_machine,
            self.geo,
            self.scheduler,
            self.timers,
            RetryPolicy.from_settings(self.settings),
            self.settings.search_radius_km,
        )
        self.gateway = IngestGateway(self.storage, self, self.scheduler)
        self._resume()

    # -- ingestion ---------------------------------------------------------

    def submit_hardware_request(
        self,
        device_uid: str,
        request_type: str,
        location: Optional[Coordinates],
        payload: str = "",
        received_at: Optional[datetime] = None,
    ) -> IngestResult:
        try:
            return self.gateway.handle(device_uid, request_type, location, payload, received_at)
        except DispatchError as exc:
            return IngestResult(accepted=False, reason=exc.reason)

    def handle_create(self, command: CreateIncident) -> Incident:
        created_at = self.scheduler.now()
        incident = Incident(
            device_uid=command.device.uid,
            account_id=command.device.account_id,
            location=command.location,
            confirmation_deadline=self.timers.deadline_for(created_at),
            created_at=created_at,
        )
        stored = self.state_machine.create(
            incident, Actor.hardware(command.device.uid), note=f"alert from {command.device.vehicle or command.device.uid}"
        )
        self.timers.start(stored.id, stored.confirmation_deadline, self._on_deadline)
        return stored

    def handle_cancel(self, command: CancelIncident) -> CancelResult:
        return self.cancel_incident(command.incident_id, Actor.hardware(command.device_uid))

    # -- operator actions --------------------------------------------------

    def cancel_incident(self, incident_id: int, actor: Optional[Actor] = None) -> CancelResult:
        """Cancel a pending incident.

        Safe to call at any time: once the incident has left ``pending`` the
        result reports whichever transition won instead of raising.
        """
        actor = actor or Actor.system()
        with self.state_machine.locks.hold(incident_id):
            incident = self.state_machine.get(incident_id)
            if incident.status == IncidentStatus.CANCELED:
                return CancelResult(CancelOutcome.ALREADY_CANCELED, incident)
            if incident.status != IncidentStatus.PENDING:
                outcome = CancelOutcome.CONFIRMED_FIRST if incident.confirmed_at else CancelOutcome.NOT_PENDING
                logger.info("Cancel of incident %s resolved as %s (%s)", incident_id, outcome.value, incident.status.value)
                return CancelResult(outcome, incident)

            if self.scheduler.now() >= incident.confirmation_deadline:
                logger.info("Cancel of incident %s arrived at or after the deadline", incident_id)
                return CancelResult(CancelOutcome.CONFIRMED_FIRST, self._resolve_deadline(incident_id))

            self.timers.discard(incident_id)
            canceled = self.state_machine.transition(
                incident_id, IncidentStatus.CANCELED, actor, note="canceled within confirmation window"
            )
        return CancelResult(CancelOutcome.CANCELED, canceled)

    def manual_assign(self, incident_id: int, ambulance_id: str, hospital_id: str, actor: Actor) -> Incident:
        return self.assignment.manual_assign(incident_id, ambulance_id, hospital_id, actor)

    def retry_assignment(self, incident_id: int, actor: Actor) -> Incident:
        return self.assignment.retry(incident_id, actor)

    def start_transport(self, incident_id: int, actor: Optional[Actor] = None) -> Incident:
        """Patient picked up: incident in progress, ambulance heading to hospital."""
        actor = actor or Actor.system()
        with self.state_machine.locks.hold(incident_id):
            incident = self.state_machine.get(incident_id)
            if incident.status != IncidentStatus.ASSIGNED:
                self.state_machine.reject(incident, IncidentStatus.IN_PROGRESS, actor)
            ambulance_id = incident.assigned_ambulance_id
            self.geo.update_reserved_status(ambulance_id, incident_id, AmbulanceStatus.EN_ROUTE_HOSPITAL)
            try:
                return self.state_machine.transition(
                    incident_id, IncidentStatus.IN_PROGRESS, actor, note=f"ambulance {ambulance_id} transporting"
                )
            except Exception:
                self.geo.update_reserved_status(ambulance_id, incident_id, AmbulanceStatus.EN_ROUTE_INCIDENT)
                raise

    def complete_incident(self, incident_id: int, actor: Optional[Actor] = None) -> Incident:
        actor = actor or Actor.system()
        with self.state_machine.locks.hold(incident_id):
            completed = self.state_machine.transition(
                incident_id, IncidentStatus.COMPLETED, actor, note="patient handed over"
            )
            self.geo.release(completed.assigned_ambulance_id, incident_id)
        return completed

    # -- registration and fleet feed ---------------------------------------

    def register_device(self, device: Device) -> Device:
        stored = self.storage.save_device(device)
        logger.info("Registered device %s (%s) for account %s", stored.uid, stored.status.value, stored.account_id)
        return stored

    def register_hospital(self, hospital: Hospital) -> Hospital:
        return self.geo.register_hospital(hospital)

    def register_ambulance(self, ambulance: Ambulance) -> Ambulance:
        return self.geo.register_ambulance(ambulance)

    def update_ambulance(
        self,
        ambulance_id: str,
        location: Coordinates,
        status: Optional[AmbulanceStatus] = None,
    ) -> Ambulance:
        return self.geo.update_position(ambulance_id, location, status)

    # -- queries and subscriptions -----------------------------------------

    def get_incident(self, incident_id: int) -> Incident:
        return self.state_machine.get(incident_id)

    def list_incidents(self, status: Optional[IncidentStatus] = None) -> List[Incident]:
        return self.storage.list_incidents(status)

    def flagged_incidents(self) -> List[Incident]:
        return [i for i in self.storage.list_incidents(IncidentStatus.CONFIRMED) if i.no_ambulance_available]

    def incident_logs(self, incident_id: int) -> List[IncidentLog]:
        self.state_machine.get(incident_id)
        return self.state_machine.logs(incident_id)

    def subscribe(self, callback: Callable[[Event], None], incident_id: Optional[int] = None, name: str = "") -> Subscription:
        return self.bus.subscribe(callback, incident_id, name)

    def stream(self, incident_id: Optional[int] = None) -> EventStream:
        return self.bus.stream(incident_id)

    def shutdown(self) -> None:
        self.timers.cancel_all()
        self.assignment.cancel_retries()
        self.bus.close()

    # -- internals ---------------------------------------------------------

    def _on_deadline(self, incident_id: int) -> None:
        self._resolve_deadline(incident_id)

    def _resolve_deadline(self, incident_id: int) -> Incident:
        with self.state_machine.locks.hold(incident_id):
            incident = self.state_machine.get(incident_id)
            if incident.status != IncidentStatus.PENDING:
                logger.debug("Deadline for incident %s ignored: already %s", incident_id, incident.status.value)
                return incident
            self.timers.discard(incident_id)
            self.state_machine.transition(
                incident_id, IncidentStatus.CONFIRMED, Actor.system(), note="confirmation window elapsed"
            )
            return self._auto_assign(incident_id)

    def _auto_assign(self, incident_id: int) -> Incident:
        try:
            return self.assignment.assign(incident_id)
        except NoAmbulanceAvailable as exc:
            logger.warning("Incident %s needs manual assignment: %s", incident_id, exc.describe())
            return self.state_machine.get(incident_id)

    def _publish_ambulance(self, ambulance: Ambulance, incident_id: Optional[int]) -> None:
        event = self.bus.publish(
            Event(
                incident_id=incident_id,
                status=ambulance.status.value,
                timestamp=self.scheduler.now(),
                payload={"ambulance": ambulance.to_dict()},
                kind="ambulance.updated",
            )
        )
        try:
            self.sink.offer("ambulance_event", OPERATORS_RECIPIENT, event.to_dict())
        except Exception:
            logger.exception("Notification sink rejected ambulance event for %s", ambulance.id)

    def _resume(self) -> None:
        """Re-arm work for incidents loaded from persistent storage."""
        for incident in self.storage.list_incidents(IncidentStatus.PENDING):
            self.timers.start(incident.id, incident.confirmation_deadline, self._on_deadline)
        for incident in self.storage.list_incidents(IncidentStatus.CONFIRMED):
            if not incident.no_ambulance_available:
                self.scheduler.call_later(
                    0, lambda incident_id=incident.id: self._retry_confirmed(incident_id),
                    label=f"resume-assign-{incident.id}",
                )

    def _retry_confirmed(self, incident_id: int) -> None:
        try:
            self._auto_assign(incident_id)
        except InvalidTransition as exc:
            logger.info("Skipping resumed assignment: %s", exc.describe())
