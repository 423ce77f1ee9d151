from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from incident_dispatch.config import DispatchSettings
from incident_dispatch.errors import InvalidTransition, NoAmbulanceAvailable, ReservationConflict
from incident_dispatch.geo import GeoIndex
from incident_dispatch.models import Actor, Incident, IncidentMode, IncidentStatus
from incident_dispatch.scheduling import ScheduledCall, Scheduler
from incident_dispatch.state_machine import OPERATORS_RECIPIENT, IncidentStateMachine
from incident_dispatch.timers import ConfirmationTimers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between assignment lookups, capped and bounded."""

    initial_seconds: float = 2.0
    factor: float = 2.0
    max_delay_seconds: float = 30.0
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> "RetryPolicy":
        return cls(
            initial_seconds=settings.retry_initial_seconds,
            factor=settings.retry_factor,
            max_delay_seconds=settings.retry_max_delay_seconds,
            max_attempts=settings.retry_max_attempts,
        )

    def delay_for(self, retry_number: int) -> float:
        return min(self.max_delay_seconds, self.initial_seconds * self.factor ** max(0, retry_number - 1))

    def exhausted(self, failed_lookups: int) -> bool:
        return failed_lookups > self.max_attempts


class AssignmentEngine:
    """Selects and reserves an ambulance plus a hospital for confirmed incidents.

    The incident lock is always taken before the ambulance lock. Reservation,
    hospital selection and the move to ``assigned`` form one unit: if the
    incident update fails after the reservation, the reservation is released.
    """

    def __init__(
        self,
        state_machine: IncidentStateMachine,
        geo: GeoIndex,
        scheduler: Scheduler,
        timers: ConfirmationTimers,
        retry_policy: Optional[RetryPolicy] = None,
        radius_km: Optional[float] = None,
    ) -> None:
        self.state_machine = state_machine
        self.geo = geo
        self.scheduler = scheduler
        self.timers = timers
        self.retry_policy = retry_policy or RetryPolicy()
        self.radius_km = radius_km
        self._retries: Dict[int, ScheduledCall] = {}
        self._retry_lock = threading.Lock()

    def assign(self, incident_id: int, actor: Optional[Actor] = None) -> Incident:
        """Automatic assignment for a confirmed incident.

        Returns the incident, which is still ``confirmed`` when no ambulance
        was found and a retry is scheduled. Raises ``NoAmbulanceAvailable``
        once the retry budget is spent.
        """
        actor = actor or Actor.system()
        sm = self.state_machine
        with sm.locks.hold(incident_id):
            incident = sm.get(incident_id)
            if incident.status != IncidentStatus.CONFIRMED:
                sm.reject(incident, IncidentStatus.ASSIGNED, actor, "automatic assignment needs a confirmed incident")
            self._drop_retry(incident_id)

            excluded = set()
            while True:
                match = self.geo.nearest_available(incident.location, self.radius_km, exclude=excluded)
                if match is None:
                    return self._handle_no_ambulance(incident, actor)
                ambulance_id = match.ambulance.id
                try:
                    self.geo.reserve(ambulance_id, incident_id)
                except ReservationConflict as exc:
                    logger.info(
                        "Incident %s lost ambulance %s (%s), searching again",
                        incident_id, ambulance_id, exc.describe(),
                    )
                    excluded.add(ambulance_id)
                    continue

                hospital = self.geo.nearest_hospital(incident.location)
                note = f"ambulance {ambulance_id} at {match.distance_km} km"
                payload = {"ambulance_distance_km": match.distance_km}
                if hospital is not None:
                    note += f", hospital {hospital.hospital.id} at {hospital.distance_km} km"
                    payload["hospital_distance_km"] = hospital.distance_km
                return self._commit(
                    incident,
                    ambulance_id,
                    hospital.hospital.id if hospital is not None else None,
                    actor,
                    IncidentMode.AUTO,
                    note,
                    payload,
                )

    def manual_assign(self, incident_id: int, ambulance_id: str, hospital_id: str, actor: Actor) -> Incident:
        """Operator override: bypasses the lookup, keeps the reservation contract."""
        sm = self.state_machine
        with sm.locks.hold(incident_id):
            incident = sm.get(incident_id)
            if incident.status not in (IncidentStatus.PENDING, IncidentStatus.CONFIRMED):
                sm.reject(incident, IncidentStatus.ASSIGNED, actor, "manual override")
            self.geo.get_hospital(hospital_id)
            self.geo.get_ambulance(ambulance_id)

            try:
                self.geo.reserve(ambulance_id, incident_id)
            except ReservationConflict as exc:
                logger.warning(
                    "Manual assignment of ambulance %s to incident %s by %s refused: %s",
                    ambulance_id, incident_id, actor, exc.describe(),
                )
                raise
            assigned = self._commit(
                incident,
                ambulance_id,
                hospital_id,
                actor,
                IncidentMode.MANUAL,
                f"manual override: ambulance {ambulance_id}, hospital {hospital_id}",
                {"manual_override": True},
            )
            self._drop_retry(incident_id)
            self.timers.discard(incident_id)
        return assigned

    def retry(self, incident_id: int, actor: Actor) -> Incident:
        """Operator-requested fresh attempt for a confirmed incident."""
        sm = self.state_machine
        with sm.locks.hold(incident_id):
            incident = sm.get(incident_id)
            if incident.status != IncidentStatus.CONFIRMED:
                sm.reject(incident, IncidentStatus.ASSIGNED, actor, "retry needs a confirmed incident")
            sm.annotate(
                incident_id,
                "assignment_retry_requested",
                actor,
                kind=None,
                assignment_attempts=0,
                no_ambulance_available=False,
            )
            return self.assign(incident_id, actor)

    def has_pending_retry(self, incident_id: int) -> bool:
        with self._retry_lock:
            return incident_id in self._retries

    def cancel_retries(self) -> None:
        with self._retry_lock:
            calls = list(self._retries.values())
            self._retries.clear()
        for call in calls:
            call.cancel()

    def _commit(
        self,
        incident: Incident,
        ambulance_id: str,
        hospital_id: Optional[str],
        actor: Actor,
        mode: IncidentMode,
        note: str,
        payload: dict,
    ) -> Incident:
        try:
            return self.state_machine.transition(
                incident.id,
                IncidentStatus.ASSIGNED,
                actor,
                note=note,
                manual=mode == IncidentMode.MANUAL,
                payload=payload,
                assigned_ambulance_id=ambulance_id,
                assigned_hospital_id=hospital_id,
                mode=mode,
                no_ambulance_available=False,
            )
        except Exception:
            logger.warning(
                "Rolling back reservation of ambulance %s for incident %s", ambulance_id, incident.id
            )
            self.geo.release(ambulance_id, incident.id)
            raise

    def _handle_no_ambulance(self, incident: Incident, actor: Actor) -> Incident:
        failed = incident.assignment_attempts + 1
        if self.retry_policy.exhausted(failed):
            flagged = self.state_machine.annotate(
                incident.id,
                "no_ambulance_available",
                actor,
                note=f"no ambulance within radius after {failed} lookups",
                kind="incident.flagged",
                recipients=[f"account:{incident.account_id}", OPERATORS_RECIPIENT],
                assignment_attempts=failed,
                no_ambulance_available=True,
            )
            logger.warning("Incident %s flagged: no ambulance available after %d lookups", incident.id, failed)
            raise NoAmbulanceAvailable(flagged.id, failed)

        updated = self.state_machine.annotate(incident.id, "", actor, assignment_attempts=failed)
        delay = self.retry_policy.delay_for(failed)
        call = self.scheduler.call_later(
            delay, lambda: self._run_retry(incident.id), label=f"assign-retry-{incident.id}"
        )
        with self._retry_lock:
            previous = self._retries.pop(incident.id, None)
            self._retries[incident.id] = call
        if previous is not None:
            previous.cancel()
        logger.info("No ambulance for incident %s; retry %d in %.1fs", incident.id, failed, delay)
        return updated

    def _run_retry(self, incident_id: int) -> None:
        with self._retry_lock:
            self._retries.pop(incident_id, None)
        try:
            self.assign(incident_id)
        except NoAmbulanceAvailable as exc:
            logger.warning("Assignment retries exhausted: %s", exc.describe())
        except InvalidTransition as exc:
            logger.info("Skipping assignment retry: %s", exc.describe())

    def _drop_retry(self, incident_id: int) -> None:
        with self._retry_lock:
            call = self._retries.pop(incident_id, None)
        if call is not None:
            call.cancel()
