from __future__ import annotations

import asyncio
import io
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from incident_dispatch.coordinator import DispatchCoordinator
from incident_dispatch.errors import (
    AmbulanceNotFound,
    DispatchError,
    HospitalNotFound,
    InactiveDevice,
    IncidentNotFound,
    InvalidRequest,
    InvalidTransition,
    NoAmbulanceAvailable,
    ReservationConflict,
    StaleWrite,
    UnknownDevice,
)
from incident_dispatch.models import (
    Actor,
    Ambulance,
    AmbulanceStatus,
    Coordinates,
    Device,
    DeviceStatus,
    Hospital,
    Incident,
    IncidentLog,
    IncidentStatus,
    utcnow,
)

from .config import DB_PATH, EVENT_POLL_SECONDS, LOG_LEVEL, PDF_EXPORT_LIMIT
from .db import SqliteStorage

logger = logging.getLogger(__name__)

app = FastAPI(title="Incident Dispatch Coordinator")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = [
    (UnknownDevice, 404),
    (IncidentNotFound, 404),
    (AmbulanceNotFound, 404),
    (HospitalNotFound, 404),
    (InactiveDevice, 409),
    (InvalidTransition, 409),
    (ReservationConflict, 409),
    (StaleWrite, 409),
    (InvalidRequest, 422),
    (NoAmbulanceAvailable, 503),
]

_coordinator: Optional[DispatchCoordinator] = None


def get_coordinator() -> DispatchCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = DispatchCoordinator(storage=SqliteStorage(DB_PATH))
    return _coordinator


@app.on_event("startup")
def startup() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    get_coordinator()


@app.on_event("shutdown")
def shutdown() -> None:
    if _coordinator is not None:
        _coordinator.shutdown()


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.describe())
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.reason, "detail": str(exc), "context": exc.context},
    )


def operator_actor(x_operator_id: str = Header(default="")) -> Actor:
    return Actor.operator(x_operator_id) if x_operator_id else Actor.system()


def admin_actor(x_admin_id: str = Header(default="")) -> Actor:
    return Actor.admin(x_admin_id) if x_admin_id else Actor.system()


class HardwareRequestIn(BaseModel):
    device_uid: str
    request_type: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    payload: Any = None


class DeviceIn(BaseModel):
    uid: str
    account_id: str
    vehicle: str = ""
    status: DeviceStatus = DeviceStatus.ACTIVE


class AmbulanceIn(BaseModel):
    id: str
    latitude: float
    longitude: float
    call_sign: str = ""
    status: Optional[AmbulanceStatus] = None


class HospitalIn(BaseModel):
    id: str
    name: str
    account_id: str
    latitude: float
    longitude: float


class ManualAssignIn(BaseModel):
    ambulance_id: str
    hospital_id: str


def _raw_payload(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, sort_keys=True)


def _build_pdf_summary(incidents: List[Incident], logs: Dict[int, List[IncidentLog]]) -> bytes:
    buff = io.BytesIO()
    pdf = canvas.Canvas(buff, pagesize=letter)
    width, height = letter

    y = height - 40
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(40, y, "Incident Dispatch Summary")
    y -= 18
    pdf.setFont("Helvetica", 10)
    pdf.drawString(40, y, f"Generated: {utcnow().isoformat()}")
    y -= 20

    for incident in incidents:
        entries = logs.get(incident.id, [])[-4:]
        box_height = 50 + 12 * len(entries)
        if y - box_height < 40:
            pdf.showPage()
            y = height - 40

        pdf.setStrokeColor(colors.red if incident.no_ambulance_available else colors.darkblue)
        pdf.rect(35, y - box_height, width - 70, box_height - 5, stroke=1, fill=0)
        pdf.setFont("Helvetica-Bold", 10)
        pdf.drawString(
            45, y - 15,
            f"Incident #{incident.id} | {incident.status.value} | {incident.mode.value} | device {incident.device_uid}",
        )
        pdf.setFont("Helvetica", 9)
        pdf.drawString(
            45, y - 28,
            f"Ambulance: {incident.assigned_ambulance_id or '-'}  |  Hospital: {incident.assigned_hospital_id or '-'}"
            f"  |  Location: {incident.location.latitude}, {incident.location.longitude}",
        )
        line_y = y - 41
        for entry in entries:
            pdf.drawString(55, line_y, f"{entry.created_at:%Y-%m-%d %H:%M:%S} {entry.action} by {entry.actor} {entry.note}"[:110])
            line_y -= 12

        y -= box_height + 5

    pdf.save()
    buff.seek(0)
    return buff.read()


@app.post("/hardware/requests")
def submit_hardware_request(body: HardwareRequestIn, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    location = None
    if body.latitude is not None and body.longitude is not None:
        location = Coordinates(body.latitude, body.longitude)
    result = coordinator.submit_hardware_request(
        body.device_uid, body.request_type, location, _raw_payload(body.payload)
    )
    return result.to_dict()


@app.post("/devices")
def register_device(
    body: DeviceIn,
    actor: Actor = Depends(admin_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    device = coordinator.register_device(
        Device(uid=body.uid, account_id=body.account_id, vehicle=body.vehicle, status=body.status)
    )
    logger.info("Device %s saved by %s", device.uid, actor)
    return {"uid": device.uid, "account_id": device.account_id, "vehicle": device.vehicle, "status": device.status.value}


@app.post("/ambulances")
def upsert_ambulance(body: AmbulanceIn, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    location = Coordinates(body.latitude, body.longitude)
    try:
        ambulance = coordinator.update_ambulance(body.id, location, body.status)
    except AmbulanceNotFound:
        ambulance = coordinator.register_ambulance(
            Ambulance(
                id=body.id,
                call_sign=body.call_sign,
                location=location,
                status=body.status or AmbulanceStatus.AVAILABLE,
            )
        )
    return ambulance.to_dict()


@app.get("/ambulances")
def list_ambulances(coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return [a.to_dict() for a in coordinator.geo.ambulances()]


@app.post("/hospitals")
def register_hospital(
    body: HospitalIn,
    actor: Actor = Depends(admin_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    hospital = coordinator.register_hospital(
        Hospital(id=body.id, name=body.name, account_id=body.account_id, location=Coordinates(body.latitude, body.longitude))
    )
    logger.info("Hospital %s saved by %s", hospital.id, actor)
    return hospital.to_dict()


@app.get("/incidents")
def list_incidents(status: Optional[IncidentStatus] = None, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return [i.to_dict() for i in coordinator.list_incidents(status)]


@app.get("/incidents/flagged")
def flagged_incidents(coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return [i.to_dict() for i in coordinator.flagged_incidents()]


@app.get("/incidents/export/pdf")
def export_incidents_pdf(coordinator: DispatchCoordinator = Depends(get_coordinator)):
    incidents = list(reversed(coordinator.list_incidents()))[:PDF_EXPORT_LIMIT]
    logs = {incident.id: coordinator.incident_logs(incident.id) for incident in incidents}
    content = _build_pdf_summary(incidents, logs)
    return StreamingResponse(
        io.BytesIO(content),
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=incident_dispatch_summary.pdf"},
    )


@app.get("/incidents/{incident_id}")
def get_incident(incident_id: int, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.get_incident(incident_id).to_dict()


@app.get("/incidents/{incident_id}/logs")
def incident_logs(incident_id: int, coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return [entry.to_dict() for entry in coordinator.incident_logs(incident_id)]


@app.post("/incidents/{incident_id}/cancel")
def cancel_incident(
    incident_id: int,
    actor: Actor = Depends(operator_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    result = coordinator.cancel_incident(incident_id, actor)
    return {"outcome": result.outcome.value, "canceled": result.canceled, "incident": result.incident.to_dict()}


@app.post("/incidents/{incident_id}/manual-assign")
def manual_assign(
    incident_id: int,
    body: ManualAssignIn,
    actor: Actor = Depends(operator_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    return coordinator.manual_assign(incident_id, body.ambulance_id, body.hospital_id, actor).to_dict()


@app.post("/incidents/{incident_id}/retry-assignment")
def retry_assignment(
    incident_id: int,
    actor: Actor = Depends(operator_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    return coordinator.retry_assignment(incident_id, actor).to_dict()


@app.post("/incidents/{incident_id}/start")
def start_transport(
    incident_id: int,
    actor: Actor = Depends(operator_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    return coordinator.start_transport(incident_id, actor).to_dict()


@app.post("/incidents/{incident_id}/complete")
def complete_incident(
    incident_id: int,
    actor: Actor = Depends(operator_actor),
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    return coordinator.complete_incident(incident_id, actor).to_dict()


@app.websocket("/ws/events")
async def events_socket(
    websocket: WebSocket,
    incident_id: Optional[int] = None,
    coordinator: DispatchCoordinator = Depends(get_coordinator),
):
    stream = coordinator.stream(incident_id)
    await websocket.accept()

    async def pump() -> None:
        while True:
            event = await run_in_threadpool(stream.get, EVENT_POLL_SECONDS)
            if event is not None:
                await websocket.send_json(event.to_dict())

    sender = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        stream.close()


@app.get("/health")
def health():
    return {"status": "ok"}
