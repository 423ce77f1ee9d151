from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Protocol

from incident_dispatch.errors import DispatchError, InactiveDevice, InvalidRequest, UnknownDevice
from incident_dispatch.locking import KeyedLocks
from incident_dispatch.models import (
    CancelOutcome,
    CancelResult,
    Coordinates,
    Device,
    DeviceStatus,
    HardwareRequest,
    Incident,
    IncidentStatus,
    IngestResult,
    RequestType,
)
from incident_dispatch.scheduling import Scheduler
from incident_dispatch.storage import Storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreateIncident:
    device: Device
    location: Coordinates
    received_at: datetime


@dataclass(frozen=True)
class CancelIncident:
    incident_id: int
    device_uid: str
    received_at: datetime


class CommandHandler(Protocol):
    def handle_create(self, command: CreateIncident) -> Incident: ...

    def handle_cancel(self, command: CancelIncident) -> CancelResult: ...


class IngestGateway:
    """Validates inbound hardware requests and turns them into commands.

    Every request is archived exactly once, after its outcome is known, so
    the stored record already carries the incident it produced. Requests
    from one device are handled one at a time, which keeps alert
    de-duplication race free.
    """

    def __init__(self, storage: Storage, handler: CommandHandler, scheduler: Scheduler) -> None:
        self.storage = storage
        self.handler = handler
        self.scheduler = scheduler
        self.locks = KeyedLocks("device")

    def handle(
        self,
        device_uid: str,
        request_type: str,
        location: Optional[Coordinates],
        raw_payload: str = "",
        received_at: Optional[datetime] = None,
    ) -> IngestResult:
        received_at = received_at or self.scheduler.now()
        request_type = getattr(request_type, "value", request_type)
        request = HardwareRequest(
            device_uid=device_uid,
            request_type=str(request_type),
            location=location,
            raw_payload=raw_payload,
            received_at=received_at,
        )
        with self.locks.hold(device_uid):
            try:
                device = self._validate_device(device_uid)
                kind = self._parse_type(request_type)
                result = self._route(device, kind, location, received_at)
            except DispatchError as exc:
                self.storage.append_hardware_request(
                    replace(request, accepted=False, rejection_reason=exc.reason)
                )
                logger.warning(
                    "Rejected %s request from device %s: %s", request_type, device_uid, exc.describe()
                )
                raise

            self.storage.save_device(replace(device, last_seen_at=received_at))
            self.storage.append_hardware_request(replace(request, incident_id=result.incident_id))
        return result

    def _validate_device(self, device_uid: str) -> Device:
        device = self.storage.get_device(device_uid)
        if device is None:
            raise UnknownDevice(device_uid)
        if device.status != DeviceStatus.ACTIVE:
            raise InactiveDevice(device_uid, device.status.value)
        return device

    @staticmethod
    def _parse_type(request_type: str) -> RequestType:
        try:
            return RequestType(str(request_type).lower())
        except ValueError:
            raise InvalidRequest(f"Unsupported request type {request_type!r}", request_type=request_type) from None

    def _route(
        self,
        device: Device,
        kind: RequestType,
        location: Optional[Coordinates],
        received_at: datetime,
    ) -> IngestResult:
        if kind == RequestType.ALERT:
            return self._alert(device, location, received_at)
        if kind == RequestType.CANCEL:
            return self._cancel(device, received_at)
        logger.debug("Liveness update from device %s (%s)", device.uid, kind.value)
        return IngestResult(accepted=True)

    def _alert(self, device: Device, location: Optional[Coordinates], received_at: datetime) -> IngestResult:
        if location is None:
            raise InvalidRequest("Alert without coordinates", device=device.uid)
        existing = self.storage.find_open_incident(device.uid)
        if existing is not None:
            logger.info(
                "Duplicate alert from device %s folded into open incident %s (%s)",
                device.uid, existing.id, existing.status.value,
            )
            return IngestResult(accepted=True, incident_id=existing.id, reason="duplicate_alert")
        incident = self.handler.handle_create(CreateIncident(device, location, received_at))
        return IngestResult(accepted=True, incident_id=incident.id)

    def _cancel(self, device: Device, received_at: datetime) -> IngestResult:
        existing = self.storage.find_open_incident(device.uid)
        if existing is None or existing.status != IncidentStatus.PENDING:
            logger.info("Cancel from device %s ignored: no pending incident", device.uid)
            return IngestResult(accepted=True, reason="no_pending_incident")
        result = self.handler.handle_cancel(CancelIncident(existing.id, device.uid, received_at))
        reason = None if result.outcome == CancelOutcome.CANCELED else result.outcome.value
        return IngestResult(accepted=True, incident_id=existing.id, reason=reason)
