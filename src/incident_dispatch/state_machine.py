"""
Incident lifecycle state machine.

Every successful transition is persisted through a versioned storage update,
then appends exactly one IncidentLog entry and publishes exactly one event.
Log entries and events are also offered to the notification sink.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, FrozenSet, List, NoReturn, Optional

from incident_dispatch.errors import IncidentNotFound, InvalidTransition
from incident_dispatch.events import EventBus, NotificationSink
from incident_dispatch.locking import KeyedLocks
from incident_dispatch.models import (
    Actor,
    Event,
    Incident,
    IncidentLog,
    IncidentStatus,
)
from incident_dispatch.scheduling import Scheduler
from incident_dispatch.storage import Storage

logger = logging.getLogger(__name__)

S = IncidentStatus

TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    S.PENDING: frozenset({S.CANCELED, S.CONFIRMED}),
    S.CONFIRMED: frozenset({S.ASSIGNED}),
    S.ASSIGNED: frozenset({S.IN_PROGRESS}),
    S.IN_PROGRESS: frozenset({S.COMPLETED}),
    S.CANCELED: frozenset(),
    S.COMPLETED: frozenset(),
}

# Operator shortcut that skips automatic confirmation.
MANUAL_TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    S.PENDING: frozenset({S.ASSIGNED}),
}

OPERATORS_RECIPIENT = "operators"


def can_transition(current: IncidentStatus, target: IncidentStatus, manual: bool = False) -> bool:
    if target in TRANSITIONS.get(current, frozenset()):
        return True
    return manual and target in MANUAL_TRANSITIONS.get(current, frozenset())


class IncidentStateMachine:
    def __init__(
        self,
        storage: Storage,
        bus: EventBus,
        sink: NotificationSink,
        scheduler: Scheduler,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.storage = storage
        self.bus = bus
        self.sink = sink
        self.scheduler = scheduler
        self.locks = locks or KeyedLocks("incident")

    def get(self, incident_id: int) -> Incident:
        incident = self.storage.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    def create(self, incident: Incident, actor: Actor, note: str = "") -> Incident:
        stored = self.storage.create_incident(incident)
        with self.locks.hold(stored.id):
            self._record(stored, "created", actor, note, kind=f"incident.{stored.status.value}")
        logger.info("Incident %s created for device %s by %s", stored.id, stored.device_uid, actor)
        return stored

    def transition(
        self,
        incident_id: int,
        target: IncidentStatus,
        actor: Actor,
        note: str = "",
        manual: bool = False,
        payload: Optional[Dict[str, Any]] = None,
        **changes: Any,
    ) -> Incident:
        """Move an incident to ``target``.

        Raises ``InvalidTransition`` without touching state when the move is
        not allowed from the current status.
        """
        with self.locks.hold(incident_id):
            current = self.get(incident_id)
            if not can_transition(current.status, target, manual=manual):
                self.reject(current, target, actor)

            now = self.scheduler.now()
            stamps: Dict[str, Any] = {}
            if target == S.CONFIRMED:
                stamps["confirmed_at"] = now
            elif target == S.ASSIGNED:
                stamps["assigned_at"] = now
            elif target.is_terminal:
                stamps["resolved_at"] = now
            stamps.update(changes)

            updated = self.storage.update_incident(replace(current, status=target, **stamps), current.version)
            self._record(updated, target.value, actor, note, kind=f"incident.{target.value}", payload=payload)
        if target.is_terminal:
            self.locks.discard(incident_id)

        logger.info(
            "Incident %s transitioned %s -> %s by %s",
            incident_id, current.status.value, target.value, actor,
        )
        return updated

    def reject(self, incident: Incident, target: IncidentStatus, actor: Actor, reason: str = "") -> NoReturn:
        """Log a refused move and raise ``InvalidTransition``."""
        logger.warning(
            "Rejected transition for incident %s: %s -> %s by %s%s",
            incident.id, incident.status.value, target.value, actor, f" ({reason})" if reason else "",
        )
        raise InvalidTransition(incident.id, incident.status.value, target.value)

    def annotate(
        self,
        incident_id: int,
        action: str,
        actor: Actor,
        note: str = "",
        kind: Optional[str] = None,
        recipients: Optional[List[str]] = None,
        **changes: Any,
    ) -> Incident:
        """Update non-status fields (flags, counters) without a transition.

        An ``action`` adds an audit entry and a ``kind`` publishes an event.
        """
        with self.locks.hold(incident_id):
            current = self.get(incident_id)
            updated = current
            if changes:
                updated = self.storage.update_incident(replace(current, **changes), current.version)
            if action:
                self._record(updated, action, actor, note, kind=kind, recipients=recipients)
        return updated

    def logs(self, incident_id: int) -> List[IncidentLog]:
        return sorted(self.storage.list_logs(incident_id), key=lambda entry: (entry.created_at, entry.id or 0))

    def _record(
        self,
        incident: Incident,
        action: str,
        actor: Actor,
        note: str,
        kind: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        recipients: Optional[List[str]] = None,
    ) -> None:
        now = self.scheduler.now()
        entry = self.storage.append_log(
            IncidentLog(incident_id=incident.id, action=action, actor=actor, note=note, created_at=now)
        )
        targets = recipients or self._recipients(incident)
        for recipient in targets:
            self._notify("incident_log", recipient, entry.to_dict())

        if kind is None:
            return
        body = {"incident": incident.to_dict(), "action": action, "actor": str(actor)}
        if payload:
            body.update(payload)
        event = self.bus.publish(
            Event(incident_id=incident.id, status=incident.status.value, timestamp=now, payload=body, kind=kind)
        )
        for recipient in targets:
            self._notify("incident_event", recipient, event.to_dict())

    def _recipients(self, incident: Incident) -> List[str]:
        recipients = [f"account:{incident.account_id}"]
        if incident.assigned_hospital_id:
            hospital = self.storage.get_hospital(incident.assigned_hospital_id)
            if hospital is not None:
                recipients.append(f"account:{hospital.account_id}")
        return recipients

    def _notify(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        try:
            self.sink.offer(kind, recipient, payload)
        except Exception:
            logger.exception("Notification sink rejected %s for %s", kind, recipient)
