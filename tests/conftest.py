from datetime import datetime, timezone

import pytest

from incident_dispatch.coordinator import DispatchCoordinator
from incident_dispatch.events import OutboxNotificationSink
from incident_dispatch.models import Coordinates, Device, DeviceStatus, Hospital
from incident_dispatch.scheduling import ManualScheduler
from incident_dispatch.storage import InMemoryStorage

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CRASH_SITE = Coordinates(30.0, 31.0)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(START)


@pytest.fixture
def sink() -> OutboxNotificationSink:
    return OutboxNotificationSink()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def coordinator(storage, scheduler, sink):
    coordinator = DispatchCoordinator(storage=storage, scheduler=scheduler, sink=sink)
    coordinator.register_device(Device(uid="DEV-1", account_id="acc-1", vehicle="Sedan"))
    coordinator.register_device(Device(uid="DEV-2", account_id="acc-2", vehicle="Pickup"))
    coordinator.register_device(Device(uid="DEV-OFF", account_id="acc-3", status=DeviceStatus.INACTIVE))
    coordinator.register_hospital(
        Hospital(id="H-1", name="Central Hospital", account_id="hosp-1", location=Coordinates(30.02, 31.02))
    )
    yield coordinator
    coordinator.shutdown()
