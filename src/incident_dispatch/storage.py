"""Storage collaborator interface and an in-memory implementation.

Incident and ambulance updates are optimistic: callers pass the version they
read, and a mismatch raises ``StaleWrite`` without touching the stored row.
"""
from __future__ import annotations

import abc
import itertools
import threading
from dataclasses import replace
from typing import Dict, List, Optional

from incident_dispatch.errors import StaleWrite
from incident_dispatch.models import (
    Ambulance,
    Device,
    HardwareRequest,
    Hospital,
    Incident,
    IncidentLog,
    IncidentStatus,
)


class Storage(abc.ABC):
    @abc.abstractmethod
    def save_device(self, device: Device) -> Device: ...

    @abc.abstractmethod
    def get_device(self, uid: str) -> Optional[Device]: ...

    @abc.abstractmethod
    def list_devices(self) -> List[Device]: ...

    @abc.abstractmethod
    def append_hardware_request(self, request: HardwareRequest) -> HardwareRequest: ...

    @abc.abstractmethod
    def list_hardware_requests(self, device_uid: Optional[str] = None) -> List[HardwareRequest]: ...

    @abc.abstractmethod
    def create_incident(self, incident: Incident) -> Incident: ...

    @abc.abstractmethod
    def get_incident(self, incident_id: int) -> Optional[Incident]: ...

    @abc.abstractmethod
    def update_incident(self, incident: Incident, expected_version: int) -> Incident:
        """Persist ``incident`` if the stored version still equals ``expected_version``."""

    @abc.abstractmethod
    def list_incidents(self, status: Optional[IncidentStatus] = None) -> List[Incident]: ...

    @abc.abstractmethod
    def save_ambulance(self, ambulance: Ambulance) -> Ambulance: ...

    @abc.abstractmethod
    def get_ambulance(self, ambulance_id: str) -> Optional[Ambulance]: ...

    @abc.abstractmethod
    def update_ambulance(self, ambulance: Ambulance, expected_version: int) -> Ambulance: ...

    @abc.abstractmethod
    def list_ambulances(self) -> List[Ambulance]: ...

    @abc.abstractmethod
    def save_hospital(self, hospital: Hospital) -> Hospital: ...

    @abc.abstractmethod
    def get_hospital(self, hospital_id: str) -> Optional[Hospital]: ...

    @abc.abstractmethod
    def list_hospitals(self) -> List[Hospital]: ...

    @abc.abstractmethod
    def append_log(self, entry: IncidentLog) -> IncidentLog: ...

    @abc.abstractmethod
    def list_logs(self, incident_id: int) -> List[IncidentLog]: ...

    def find_open_incident(self, device_uid: str) -> Optional[Incident]:
        """Most recent non-terminal incident raised by ``device_uid``."""
        candidates = [
            incident
            for incident in self.list_incidents()
            if incident.device_uid == device_uid and incident.is_open
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.id or 0)


class InMemoryStorage(Storage):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._devices: Dict[str, Device] = {}
        self._requests: List[HardwareRequest] = []
        self._incidents: Dict[int, Incident] = {}
        self._ambulances: Dict[str, Ambulance] = {}
        self._hospitals: Dict[str, Hospital] = {}
        self._logs: List[IncidentLog] = []
        self._incident_ids = itertools.count(1)
        self._request_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

    def save_device(self, device: Device) -> Device:
        with self._lock:
            self._devices[device.uid] = device
        return device

    def get_device(self, uid: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(uid)

    def list_devices(self) -> List[Device]:
        with self._lock:
            return sorted(self._devices.values(), key=lambda d: d.uid)

    def append_hardware_request(self, request: HardwareRequest) -> HardwareRequest:
        with self._lock:
            stored = replace(request, id=next(self._request_ids))
            self._requests.append(stored)
        return stored

    def list_hardware_requests(self, device_uid: Optional[str] = None) -> List[HardwareRequest]:
        with self._lock:
            return [r for r in self._requests if device_uid is None or r.device_uid == device_uid]

    def create_incident(self, incident: Incident) -> Incident:
        with self._lock:
            stored = replace(incident, id=next(self._incident_ids), version=1)
            self._incidents[stored.id] = stored
        return stored

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        with self._lock:
            return self._incidents.get(incident_id)

    def update_incident(self, incident: Incident, expected_version: int) -> Incident:
        with self._lock:
            current = self._incidents.get(incident.id)
            if current is None or current.version != expected_version:
                raise StaleWrite("incident", incident.id, expected_version)
            stored = replace(incident, version=expected_version + 1)
            self._incidents[stored.id] = stored
        return stored

    def list_incidents(self, status: Optional[IncidentStatus] = None) -> List[Incident]:
        with self._lock:
            return [
                incident
                for _, incident in sorted(self._incidents.items())
                if status is None or incident.status == status
            ]

    def save_ambulance(self, ambulance: Ambulance) -> Ambulance:
        with self._lock:
            current = self._ambulances.get(ambulance.id)
            version = (current.version if current else 0) + 1
            stored = replace(ambulance, version=version)
            self._ambulances[stored.id] = stored
        return stored

    def get_ambulance(self, ambulance_id: str) -> Optional[Ambulance]:
        with self._lock:
            return self._ambulances.get(ambulance_id)

    def update_ambulance(self, ambulance: Ambulance, expected_version: int) -> Ambulance:
        with self._lock:
            current = self._ambulances.get(ambulance.id)
            if current is None or current.version != expected_version:
                raise StaleWrite("ambulance", ambulance.id, expected_version)
            stored = replace(ambulance, version=expected_version + 1)
            self._ambulances[stored.id] = stored
        return stored

    def list_ambulances(self) -> List[Ambulance]:
        with self._lock:
            return sorted(self._ambulances.values(), key=lambda a: a.id)

    def save_hospital(self, hospital: Hospital) -> Hospital:
        with self._lock:
            self._hospitals[hospital.id] = hospital
        return hospital

    def get_hospital(self, hospital_id: str) -> Optional[Hospital]:
        with self._lock:
            return self._hospitals.get(hospital_id)

    def list_hospitals(self) -> List[Hospital]:
        with self._lock:
            return sorted(self._hospitals.values(), key=lambda h: h.id)

    def append_log(self, entry: IncidentLog) -> IncidentLog:
        with self._lock:
            stored = replace(entry, id=next(self._log_ids))
            self._logs.append(stored)
        return stored

    def list_logs(self, incident_id: int) -> List[IncidentLog]:
        with self._lock:
            return [entry for entry in self._logs if entry.incident_id == incident_id]
