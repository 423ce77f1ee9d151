from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from incident_dispatch.errors import StaleWrite
from incident_dispatch.models import (
    Actor,
    Ambulance,
    AmbulanceStatus,
    Coordinates,
    Device,
    DeviceStatus,
    HardwareRequest,
    Hospital,
    Incident,
    IncidentLog,
    IncidentMode,
    IncidentStatus,
)
from incident_dispatch.storage import Storage

from .config import DB_PATH

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS devices (
        uid TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        vehicle TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'active',
        last_seen_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS incidents (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_uid TEXT NOT NULL,
        account_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        mode TEXT NOT NULL DEFAULT 'auto',
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        assigned_ambulance_id TEXT,
        assigned_hospital_id TEXT,
        confirmation_deadline TEXT NOT NULL,
        created_at TEXT NOT NULL,
        confirmed_at TEXT,
        assigned_at TEXT,
        resolved_at TEXT,
        no_ambulance_available INTEGER NOT NULL DEFAULT 0,
        assignment_attempts INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(device_uid) REFERENCES devices(uid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hardware_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_uid TEXT NOT NULL,
        request_type TEXT NOT NULL,
        latitude REAL,
        longitude REAL,
        raw_payload TEXT,
        received_at TEXT NOT NULL,
        incident_id INTEGER,
        accepted INTEGER NOT NULL DEFAULT 1,
        rejection_reason TEXT,
        FOREIGN KEY(incident_id) REFERENCES incidents(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ambulances (
        id TEXT PRIMARY KEY,
        call_sign TEXT NOT NULL DEFAULT '',
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'available',
        reserved_by INTEGER,
        updated_at TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(reserved_by) REFERENCES incidents(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hospitals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        account_id TEXT NOT NULL,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS incident_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        incident_id INTEGER NOT NULL,
        action TEXT NOT NULL,
        performed_by TEXT NOT NULL,
        note TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY(incident_id) REFERENCES incidents(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_incidents_device ON incidents(device_uid, status)",
    "CREATE INDEX IF NOT EXISTS idx_logs_incident ON incident_logs(incident_id)",
]

INCIDENT_COLUMNS = (
    "device_uid", "account_id", "status", "mode", "latitude", "longitude",
    "assigned_ambulance_id", "assigned_hospital_id", "confirmation_deadline", "created_at",
    "confirmed_at", "assigned_at", "resolved_at", "no_ambulance_available", "assignment_attempts",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteStorage(Storage):
    """Storage backed by one SQLite file, one connection per operation."""

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = Path(db_path)
        self.init_db()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    # -- devices -----------------------------------------------------------

    def save_device(self, device: Device) -> Device:
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO devices (uid,account_id,vehicle,status,last_seen_at) VALUES (?,?,?,?,?)
                ON CONFLICT(uid) DO UPDATE SET
                    account_id=excluded.account_id, vehicle=excluded.vehicle,
                    status=excluded.status, last_seen_at=excluded.last_seen_at
                """,
                (device.uid, device.account_id, device.vehicle, device.status.value, _iso(device.last_seen_at)),
            )
        return device

    def get_device(self, uid: str) -> Optional[Device]:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM devices WHERE uid=?", (uid,)).fetchone()
        return self._device(row) if row else None

    def list_devices(self) -> List[Device]:
        with self.get_conn() as conn:
            rows = conn.execute("SELECT * FROM devices ORDER BY uid").fetchall()
        return [self._device(r) for r in rows]

    @staticmethod
    def _device(row: sqlite3.Row) -> Device:
        return Device(
            uid=row["uid"],
            account_id=row["account_id"],
            vehicle=row["vehicle"],
            status=DeviceStatus(row["status"]),
            last_seen_at=_dt(row["last_seen_at"]),
        )

    # -- hardware requests -------------------------------------------------

    def append_hardware_request(self, request: HardwareRequest) -> HardwareRequest:
        location = request.location
        with self.get_conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO hardware_requests (
                    device_uid,request_type,latitude,longitude,raw_payload,received_at,incident_id,accepted,rejection_reason
                ) VALUES (?,?,?,?,?,?,?,?,?)
                """,
                (
                    request.device_uid,
                    request.request_type,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    request.raw_payload,
                    _iso(request.received_at),
                    request.incident_id,
                    int(request.accepted),
                    request.rejection_reason,
                ),
            )
            request_id = cursor.lastrowid
        return replace(request, id=request_id)

    def list_hardware_requests(self, device_uid: Optional[str] = None) -> List[HardwareRequest]:
        with self.get_conn() as conn:
            if device_uid is None:
                rows = conn.execute("SELECT * FROM hardware_requests ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM hardware_requests WHERE device_uid=? ORDER BY id", (device_uid,)
                ).fetchall()
        return [
            HardwareRequest(
                id=r["id"],
                device_uid=r["device_uid"],
                request_type=r["request_type"],
                location=Coordinates(r["latitude"], r["longitude"]) if r["latitude"] is not None else None,
                raw_payload=r["raw_payload"] or "",
                received_at=_dt(r["received_at"]),
                incident_id=r["incident_id"],
                accepted=bool(r["accepted"]),
                rejection_reason=r["rejection_reason"],
            )
            for r in rows
        ]

    # -- incidents ---------------------------------------------------------

    def create_incident(self, incident: Incident) -> Incident:
        values = self._incident_values(incident)
        placeholders = ",".join("?" for _ in INCIDENT_COLUMNS)
        with self.get_conn() as conn:
            cursor = conn.execute(
                f"INSERT INTO incidents ({','.join(INCIDENT_COLUMNS)},version) VALUES ({placeholders},1)",
                values,
            )
            incident_id = cursor.lastrowid
        return self.get_incident(incident_id)

    def get_incident(self, incident_id: int) -> Optional[Incident]:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident_id,)).fetchone()
        return self._incident(row) if row else None

    def update_incident(self, incident: Incident, expected_version: int) -> Incident:
        assignments = ",".join(f"{column}=?" for column in INCIDENT_COLUMNS)
        with self.get_conn() as conn:
            cursor = conn.execute(
                f"UPDATE incidents SET {assignments}, version=version+1 WHERE id=? AND version=?",
                (*self._incident_values(incident), incident.id, expected_version),
            )
            if cursor.rowcount == 0:
                raise StaleWrite("incident", incident.id, expected_version)
        return self.get_incident(incident.id)

    def list_incidents(self, status: Optional[IncidentStatus] = None) -> List[Incident]:
        with self.get_conn() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM incidents ORDER BY id").fetchall()
            else:
                rows = conn.execute("SELECT * FROM incidents WHERE status=? ORDER BY id", (status.value,)).fetchall()
        return [self._incident(r) for r in rows]

    def find_open_incident(self, device_uid: str) -> Optional[Incident]:
        with self.get_conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM incidents
                WHERE device_uid=? AND status NOT IN ('canceled','completed')
                ORDER BY id DESC LIMIT 1
                """,
                (device_uid,),
            ).fetchone()
        return self._incident(row) if row else None

    @staticmethod
    def _incident_values(incident: Incident) -> tuple:
        return (
            incident.device_uid,
            incident.account_id,
            incident.status.value,
            incident.mode.value,
            incident.location.latitude,
            incident.location.longitude,
            incident.assigned_ambulance_id,
            incident.assigned_hospital_id,
            _iso(incident.confirmation_deadline),
            _iso(incident.created_at),
            _iso(incident.confirmed_at),
            _iso(incident.assigned_at),
            _iso(incident.resolved_at),
            int(incident.no_ambulance_available),
            incident.assignment_attempts,
        )

    @staticmethod
    def _incident(row: sqlite3.Row) -> Incident:
        return Incident(
            id=row["id"],
            device_uid=row["device_uid"],
            account_id=row["account_id"],
            status=IncidentStatus(row["status"]),
            mode=IncidentMode(row["mode"]),
            location=Coordinates(row["latitude"], row["longitude"]),
            assigned_ambulance_id=row["assigned_ambulance_id"],
            assigned_hospital_id=row["assigned_hospital_id"],
            confirmation_deadline=_dt(row["confirmation_deadline"]),
            created_at=_dt(row["created_at"]),
            confirmed_at=_dt(row["confirmed_at"]),
            assigned_at=_dt(row["assigned_at"]),
            resolved_at=_dt(row["resolved_at"]),
            no_ambulance_available=bool(row["no_ambulance_available"]),
            assignment_attempts=row["assignment_attempts"],
            version=row["version"],
        )

    # -- ambulances --------------------------------------------------------

    def save_ambulance(self, ambulance: Ambulance) -> Ambulance:
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO ambulances (id,call_sign,latitude,longitude,status,reserved_by,updated_at,version)
                VALUES (?,?,?,?,?,?,?,1)
                ON CONFLICT(id) DO UPDATE SET
                    call_sign=excluded.call_sign, latitude=excluded.latitude, longitude=excluded.longitude,
                    status=excluded.status, reserved_by=excluded.reserved_by, updated_at=excluded.updated_at,
                    version=ambulances.version+1
                """,
                (
                    ambulance.id,
                    ambulance.call_sign,
                    ambulance.location.latitude,
                    ambulance.location.longitude,
                    ambulance.status.value,
                    ambulance.reserved_by,
                    _iso(ambulance.updated_at),
                ),
            )
        return self.get_ambulance(ambulance.id)

    def get_ambulance(self, ambulance_id: str) -> Optional[Ambulance]:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM ambulances WHERE id=?", (ambulance_id,)).fetchone()
        return self._ambulance(row) if row else None

    def update_ambulance(self, ambulance: Ambulance, expected_version: int) -> Ambulance:
        with self.get_conn() as conn:
            cursor = conn.execute(
                """
                UPDATE ambulances SET call_sign=?, latitude=?, longitude=?, status=?, reserved_by=?, updated_at=?,
                    version=version+1
                WHERE id=? AND version=?
                """,
                (
                    ambulance.call_sign,
                    ambulance.location.latitude,
                    ambulance.location.longitude,
                    ambulance.status.value,
                    ambulance.reserved_by,
                    _iso(ambulance.updated_at),
                    ambulance.id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                raise StaleWrite("ambulance", ambulance.id, expected_version)
        return self.get_ambulance(ambulance.id)

    def list_ambulances(self) -> List[Ambulance]:
        with self.get_conn() as conn:
            rows = conn.execute("SELECT * FROM ambulances ORDER BY id").fetchall()
        return [self._ambulance(r) for r in rows]

    @staticmethod
    def _ambulance(row: sqlite3.Row) -> Ambulance:
        return Ambulance(
            id=row["id"],
            call_sign=row["call_sign"],
            location=Coordinates(row["latitude"], row["longitude"]),
            status=AmbulanceStatus(row["status"]),
            reserved_by=row["reserved_by"],
            updated_at=_dt(row["updated_at"]),
            version=row["version"],
        )

    # -- hospitals ---------------------------------------------------------

    def save_hospital(self, hospital: Hospital) -> Hospital:
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO hospitals (id,name,account_id,latitude,longitude) VALUES (?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name, account_id=excluded.account_id,
                    latitude=excluded.latitude, longitude=excluded.longitude
                """,
                (hospital.id, hospital.name, hospital.account_id, hospital.location.latitude, hospital.location.longitude),
            )
        return hospital

    def get_hospital(self, hospital_id: str) -> Optional[Hospital]:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM hospitals WHERE id=?", (hospital_id,)).fetchone()
        return self._hospital(row) if row else None

    def list_hospitals(self) -> List[Hospital]:
        with self.get_conn() as conn:
            rows = conn.execute("SELECT * FROM hospitals ORDER BY id").fetchall()
        return [self._hospital(r) for r in rows]

    @staticmethod
    def _hospital(row: sqlite3.Row) -> Hospital:
        return Hospital(
            id=row["id"],
            name=row["name"],
            account_id=row["account_id"],
            location=Coordinates(row["latitude"], row["longitude"]),
        )

    # -- incident logs -----------------------------------------------------

    def append_log(self, entry: IncidentLog) -> IncidentLog:
        with self.get_conn() as conn:
            cursor = conn.execute(
                "INSERT INTO incident_logs (incident_id,action,performed_by,note,created_at) VALUES (?,?,?,?,?)",
                (entry.incident_id, entry.action, str(entry.actor), entry.note, _iso(entry.created_at)),
            )
            log_id = cursor.lastrowid
        return replace(entry, id=log_id)

    def list_logs(self, incident_id: int) -> List[IncidentLog]:
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM incident_logs WHERE incident_id=? ORDER BY created_at, id", (incident_id,)
            ).fetchall()
        return [
            IncidentLog(
                id=r["id"],
                incident_id=r["incident_id"],
                action=r["action"],
                actor=Actor.parse(r["performed_by"]),
                note=r["note"] or "",
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
