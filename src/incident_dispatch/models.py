from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class RequestType(str, Enum):
    ALERT = "alert"
    CANCEL = "cancel"
    HEARTBEAT = "heartbeat"
    STATUS = "status"


class IncidentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (IncidentStatus.CANCELED, IncidentStatus.COMPLETED)


class IncidentMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class AmbulanceStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    EN_ROUTE_INCIDENT = "en_route_incident"
    EN_ROUTE_HOSPITAL = "en_route_hospital"


class ActorKind(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    HARDWARE = "hardware"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Actor:
    """Who performed an incident action: system, admin, hardware or operator."""

    kind: ActorKind
    ident: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorKind.SYSTEM)

    @classmethod
    def admin(cls, admin_id: str) -> "Actor":
        return cls(ActorKind.ADMIN, str(admin_id))

    @classmethod
    def hardware(cls, device_uid: str) -> "Actor":
        return cls(ActorKind.HARDWARE, device_uid)

    @classmethod
    def operator(cls, operator_id: str) -> "Actor":
        return cls(ActorKind.OPERATOR, str(operator_id))

    @classmethod
    def parse(cls, raw: str) -> "Actor":
        kind, _, ident = raw.partition(":")
        return cls(ActorKind(kind), ident or None)

    def __str__(self) -> str:
        if self.ident is None:
            return self.kind.value
        return f"{self.kind.value}:{self.ident}"


@dataclass(frozen=True)
class Device:
    uid: str
    account_id: str
    vehicle: str = ""
    status: DeviceStatus = DeviceStatus.ACTIVE
    last_seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class HardwareRequest:
    device_uid: str
    request_type: str
    location: Optional[Coordinates]
    raw_payload: str = ""
    received_at: datetime = field(default_factory=utcnow)
    incident_id: Optional[int] = None
    accepted: bool = True
    rejection_reason: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class Incident:
    device_uid: str
    account_id: str
    location: Coordinates
    confirmation_deadline: datetime
    created_at: datetime
    status: IncidentStatus = IncidentStatus.PENDING
    mode: IncidentMode = IncidentMode.AUTO
    assigned_ambulance_id: Optional[str] = None
    assigned_hospital_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    no_ambulance_available: bool = False
    assignment_attempts: int = 0
    version: int = 0
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "device_uid": self.device_uid,
            "account_id": self.account_id,
            "status": self.status.value,
            "mode": self.mode.value,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "assigned_ambulance_id": self.assigned_ambulance_id,
            "assigned_hospital_id": self.assigned_hospital_id,
            "confirmation_deadline": _iso(self.confirmation_deadline),
            "created_at": _iso(self.created_at),
            "confirmed_at": _iso(self.confirmed_at),
            "assigned_at": _iso(self.assigned_at),
            "resolved_at": _iso(self.resolved_at),
            "no_ambulance_available": self.no_ambulance_available,
            "assignment_attempts": self.assignment_attempts,
            "version": self.version,
        }


@dataclass(frozen=True)
class Ambulance:
    id: str
    location: Coordinates
    call_sign: str = ""
    status: AmbulanceStatus = AmbulanceStatus.AVAILABLE
    reserved_by: Optional[int] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_available(self) -> bool:
        return self.status == AmbulanceStatus.AVAILABLE and self.reserved_by is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "call_sign": self.call_sign,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "status": self.status.value,
            "reserved_by": self.reserved_by,
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }


@dataclass(frozen=True)
class Hospital:
    id: str
    name: str
    account_id: str
    location: Coordinates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "account_id": self.account_id,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
        }


@dataclass(frozen=True)
class IncidentLog:
    incident_id: int
    action: str
    actor: Actor
    note: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "action": self.action,
            "actor": str(self.actor),
            "note": self.note,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Event:
    incident_id: Optional[int]
    status: Optional[str]
    timestamp: datetime
    payload: Dict[str, Any]
    kind: str
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "incident_id": self.incident_id,
            "status": self.status,
            "timestamp": _iso(self.timestamp),
            "sequence": self.sequence,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    incident_id: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "incident_id": self.incident_id, "reason": self.reason}


class CancelOutcome(str, Enum):
    CANCELED = "canceled"
    ALREADY_CANCELED = "already_canceled"
    CONFIRMED_FIRST = "confirmed_first"
    NOT_PENDING = "not_pending"


@dataclass(frozen=True)
class CancelResult:
    outcome: CancelOutcome
    incident: Incident

    @property
    def canceled(self) -> bool:
        return self.outcome in (CancelOutcome.CANCELED, CancelOutcome.ALREADY_CANCELED)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
