from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from incident_dispatch.errors import AmbulanceNotFound, HospitalNotFound, InvalidRequest, ReservationConflict
from incident_dispatch.locking import KeyedLocks
from incident_dispatch.models import Ambulance, AmbulanceStatus, Coordinates, Hospital, utcnow
from incident_dispatch.storage import Storage

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 50.0

# Statuses a fleet feed may set directly; en-route statuses belong to reservations.
EXTERNAL_STATUSES = {AmbulanceStatus.AVAILABLE, AmbulanceStatus.BUSY, AmbulanceStatus.OFFLINE}

# Called with the stored ambulance and the incident the change was made for.
AmbulanceListener = Callable[[Ambulance, Optional[int]], None]


def haversine_km(origin: Coordinates, target: Coordinates) -> float:
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(target.latitude), math.radians(target.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class AmbulanceMatch:
    ambulance: Ambulance
    distance_km: float


@dataclass(frozen=True)
class HospitalMatch:
    hospital: Hospital
    distance_km: float


class GeoIndex:
    """Current ambulance positions/statuses and hospital locations.

    The ambulance table is copy-on-write: readers take the current dict
    reference without locking, writers build a new dict under the
    per-ambulance lock and swap it in. Every write also goes through the
    storage collaborator's versioned update, and every stored change is
    reported to ``on_change`` once the ambulance lock is released.
    """

    def __init__(
        self,
        storage: Storage,
        default_radius_km: float = DEFAULT_RADIUS_KM,
        on_change: Optional[AmbulanceListener] = None,
    ) -> None:
        self.storage = storage
        self.default_radius_km = default_radius_km
        self.on_change = on_change
        self.locks = KeyedLocks("ambulance")
        self._swap_lock = threading.Lock()
        self._ambulances: Dict[str, Ambulance] = {a.id: a for a in storage.list_ambulances()}
        self._hospitals: Dict[str, Hospital] = {h.id: h for h in storage.list_hospitals()}

    # -- reads -------------------------------------------------------------

    def ambulances(self) -> List[Ambulance]:
        return sorted(self._ambulances.values(), key=lambda a: a.id)

    def hospitals(self) -> List[Hospital]:
        return sorted(self._hospitals.values(), key=lambda h: h.id)

    def get_ambulance(self, ambulance_id: str) -> Ambulance:
        ambulance = self._ambulances.get(ambulance_id)
        if ambulance is None:
            raise AmbulanceNotFound(ambulance_id)
        return ambulance

    def get_hospital(self, hospital_id: str) -> Hospital:
        hospital = self._hospitals.get(hospital_id)
        if hospital is None:
            raise HospitalNotFound(hospital_id)
        return hospital

    def nearest_available(
        self,
        location: Coordinates,
        max_radius_km: Optional[float] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[AmbulanceMatch]:
        """Closest available ambulance within the radius, or None.

        Ties on distance go to the lowest ambulance id.
        """
        radius = self.default_radius_km if max_radius_km is None else max_radius_km
        skipped = set(exclude)
        ranked = []
        for ambulance in self._ambulances.values():
            if ambulance.id in skipped or not ambulance.is_available:
                continue
            distance = haversine_km(location, ambulance.location)
            if distance <= radius:
                ranked.append((distance, ambulance.id, ambulance))

        if not ranked:
            return None
        distance, _, ambulance = min(ranked, key=lambda item: (item[0], item[1]))
        return AmbulanceMatch(ambulance=ambulance, distance_km=round(distance, 3))

    def nearest_hospital(self, location: Coordinates) -> Optional[HospitalMatch]:
        ranked = [
            (haversine_km(location, hospital.location), hospital.id, hospital)
            for hospital in self._hospitals.values()
        ]
        if not ranked:
            return None
        distance, _, hospital = min(ranked, key=lambda item: (item[0], item[1]))
        return HospitalMatch(hospital=hospital, distance_km=round(distance, 3))

    # -- writes ------------------------------------------------------------

    def register_ambulance(self, ambulance: Ambulance) -> Ambulance:
        """Add an ambulance, or refresh an existing one.

        Re-registering a reserved ambulance refreshes its position and call
        sign only; the reservation keeps control of its status.
        """
        with self.locks.hold(ambulance.id):
            current = self._ambulances.get(ambulance.id)
            if current is not None:
                status = ambulance.status
                if current.reserved_by is not None:
                    logger.info(
                        "Ambulance %s re-registered while held by incident %s; keeping status %s",
                        ambulance.id, current.reserved_by, current.status.value,
                    )
                    status = None
                stored = self._move(current, ambulance.location, status, ambulance.call_sign)
            else:
                if ambulance.status not in EXTERNAL_STATUSES:
                    raise InvalidRequest(
                        f"Ambulance {ambulance.id} cannot be registered as {ambulance.status.value}",
                        ambulance=ambulance.id,
                    )
                stored = self.storage.save_ambulance(replace(ambulance, reserved_by=None, updated_at=utcnow()))
                self._swap(stored)
                logger.info("Registered ambulance %s at %s", stored.id, stored.location)
        self._changed(stored, stored.reserved_by)
        return stored

    def register_hospital(self, hospital: Hospital) -> Hospital:
        stored = self.storage.save_hospital(hospital)
        with self._swap_lock:
            table = dict(self._hospitals)
            table[stored.id] = stored
            self._hospitals = table
        return stored

    def update_position(
        self,
        ambulance_id: str,
        location: Coordinates,
        status: Optional[AmbulanceStatus] = None,
        call_sign: Optional[str] = None,
    ) -> Ambulance:
        with self.locks.hold(ambulance_id):
            updated = self._move(self.get_ambulance(ambulance_id), location, status, call_sign)
        self._changed(updated, updated.reserved_by)
        return updated

    def reserve(self, ambulance_id: str, incident_id: int) -> Ambulance:
        with self.locks.hold(ambulance_id):
            current = self.get_ambulance(ambulance_id)
            if not current.is_available:
                raise ReservationConflict(ambulance_id, holder=current.reserved_by, status=current.status.value)
            reserved = self._write(
                current,
                status=AmbulanceStatus.EN_ROUTE_INCIDENT,
                reserved_by=incident_id,
                updated_at=utcnow(),
            )
        logger.info("Ambulance %s reserved for incident %s", ambulance_id, incident_id)
        self._changed(reserved, incident_id)
        return reserved

    def update_reserved_status(self, ambulance_id: str, incident_id: int, status: AmbulanceStatus) -> Ambulance:
        """Status change made by the incident currently holding the reservation."""
        with self.locks.hold(ambulance_id):
            current = self.get_ambulance(ambulance_id)
            if current.reserved_by != incident_id:
                raise ReservationConflict(ambulance_id, holder=current.reserved_by, status=current.status.value)
            if status == current.status:
                return current
            updated = self._write(current, status=status, updated_at=utcnow())
        self._changed(updated, incident_id)
        return updated

    def release(self, ambulance_id: str, incident_id: int) -> Ambulance:
        """Return the ambulance to service. Releasing a hold you do not own is a no-op."""
        with self.locks.hold(ambulance_id):
            current = self.get_ambulance(ambulance_id)
            if current.reserved_by != incident_id:
                logger.warning(
                    "Ignoring release of ambulance %s by incident %s (held by %s)",
                    ambulance_id, incident_id, current.reserved_by,
                )
                return current
            released = self._write(
                current,
                status=AmbulanceStatus.AVAILABLE,
                reserved_by=None,
                updated_at=utcnow(),
            )
        logger.info("Ambulance %s released by incident %s", ambulance_id, incident_id)
        self._changed(released, incident_id)
        return released

    def _move(
        self,
        current: Ambulance,
        location: Coordinates,
        status: Optional[AmbulanceStatus],
        call_sign: Optional[str],
    ) -> Ambulance:
        changes = {"location": location, "updated_at": utcnow()}
        if call_sign:
            changes["call_sign"] = call_sign
        if status is not None and status != current.status:
            if status not in EXTERNAL_STATUSES:
                raise InvalidRequest(
                    f"Status {status.value} is set by reservations only", ambulance=current.id
                )
            if current.reserved_by is not None:
                raise ReservationConflict(current.id, holder=current.reserved_by, status=current.status.value)
            changes["status"] = status
        return self._write(current, **changes)

    def _write(self, current: Ambulance, **changes) -> Ambulance:
        stored = self.storage.update_ambulance(replace(current, **changes), current.version)
        self._swap(stored)
        return stored

    def _swap(self, ambulance: Ambulance) -> None:
        with self._swap_lock:
            table = dict(self._ambulances)
            table[ambulance.id] = ambulance
            self._ambulances = table

    def _changed(self, ambulance: Ambulance, incident_id: Optional[int]) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(ambulance, incident_id)
        except Exception:
            logger.exception("Ambulance listener failed for %s", ambulance.id)
