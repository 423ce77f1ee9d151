from __future__ import annotations

from typing import Any, Dict, Optional


class DispatchError(Exception):
    """Base class for rejected coordinator commands.

    ``context`` carries the identifiers needed to reconstruct the decision
    (device, incident, ambulance) and is attached to log records.
    """

    reason = "dispatch_error"

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.reason)
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def describe(self) -> str:
        details = " ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{self.reason} {details}".strip()


class UnknownDevice(DispatchError):
    reason = "unknown_device"

    def __init__(self, device_uid: str) -> None:
        super().__init__(f"Unknown device {device_uid}", device=device_uid)
        self.device_uid = device_uid


class InactiveDevice(DispatchError):
    reason = "inactive_device"

    def __init__(self, device_uid: str, status: str) -> None:
        super().__init__(f"Device {device_uid} is {status}", device=device_uid, status=status)
        self.device_uid = device_uid
        self.status = status


class InvalidRequest(DispatchError):
    reason = "invalid_request"


class InvalidTransition(DispatchError):
    reason = "invalid_transition"

    def __init__(self, incident_id: Optional[int], from_status: str, to_status: str) -> None:
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}",
            incident=incident_id,
            from_status=from_status,
            to_status=to_status,
        )
        self.incident_id = incident_id
        self.from_status = from_status
        self.to_status = to_status


class IncidentNotFound(DispatchError):
    reason = "incident_not_found"

    def __init__(self, incident_id: int) -> None:
        super().__init__(f"Incident {incident_id} not found", incident=incident_id)
        self.incident_id = incident_id


class AmbulanceNotFound(DispatchError):
    reason = "ambulance_not_found"

    def __init__(self, ambulance_id: str) -> None:
        super().__init__(f"Ambulance {ambulance_id} not found", ambulance=ambulance_id)
        self.ambulance_id = ambulance_id


class HospitalNotFound(DispatchError):
    reason = "hospital_not_found"

    def __init__(self, hospital_id: str) -> None:
        super().__init__(f"Hospital {hospital_id} not found", hospital=hospital_id)
        self.hospital_id = hospital_id


class NoAmbulanceAvailable(DispatchError):
    """Recoverable: the incident stays confirmed and is flagged for operators."""

    reason = "no_ambulance_available"

    def __init__(self, incident_id: int, attempts: int) -> None:
        super().__init__(
            f"No ambulance available for incident {incident_id} after {attempts} attempts",
            incident=incident_id,
            attempts=attempts,
        )
        self.incident_id = incident_id
        self.attempts = attempts


class ReservationConflict(DispatchError):
    """Transient: another incident holds or just took the ambulance."""

    reason = "reservation_conflict"

    def __init__(self, ambulance_id: str, holder: Optional[int] = None, status: Optional[str] = None) -> None:
        super().__init__(
            f"Ambulance {ambulance_id} cannot be reserved",
            ambulance=ambulance_id,
            holder=holder,
            status=status,
        )
        self.ambulance_id = ambulance_id
        self.holder = holder


class StaleWrite(DispatchError):
    """Optimistic version check failed in storage."""

    reason = "stale_write"

    def __init__(self, entity: str, key: Any, expected_version: int) -> None:
        super().__init__(
            f"{entity} {key} changed since version {expected_version}",
            entity=entity,
            key=key,
            expected_version=expected_version,
        )
