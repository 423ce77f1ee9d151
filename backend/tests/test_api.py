from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from dispatch_api.main import app, get_coordinator
from incident_dispatch.coordinator import DispatchCoordinator
from incident_dispatch.events import OutboxNotificationSink
from incident_dispatch.scheduling import ManualScheduler

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def scheduler():
    return ManualScheduler(START)


@pytest.fixture
def client(scheduler):
    coordinator = DispatchCoordinator(scheduler=scheduler, sink=OutboxNotificationSink())
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    client = TestClient(app)
    _seed(client)
    yield client
    app.dependency_overrides.clear()
    coordinator.shutdown()


def _seed(client: TestClient) -> None:
    admin = {'X-Admin-Id': '1'}
    assert client.post('/devices', json={'uid': 'DEV-1', 'account_id': 'acc-1', 'vehicle': 'Sedan'}, headers=admin).status_code == 200
    assert client.post('/devices', json={'uid': 'DEV-OFF', 'account_id': 'acc-2', 'status': 'inactive'}, headers=admin).status_code == 200
    assert client.post(
        '/hospitals',
        json={'id': 'H-1', 'name': 'Central', 'account_id': 'hosp-1', 'latitude': 30.02, 'longitude': 31.02},
        headers=admin,
    ).status_code == 200


def _alert(client: TestClient, device_uid: str = 'DEV-1') -> dict:
    resp = client.post(
        '/hardware/requests',
        json={'device_uid': device_uid, 'request_type': 'alert', 'latitude': 30.0, 'longitude': 31.0, 'payload': {'impact_g': 5.2}},
    )
    assert resp.status_code == 200
    return resp.json()


def _add_ambulance(client: TestClient, ambulance_id: str = 'A-1', **extra) -> dict:
    body = {'id': ambulance_id, 'latitude': 30.01, 'longitude': 31.01, 'call_sign': 'Alpha', **extra}
    resp = client.post('/ambulances', json=body)
    assert resp.status_code == 200
    return resp.json()


def test_health(client):
    assert client.get('/health').json() == {'status': 'ok'}


def test_alert_is_confirmed_and_assigned(client, scheduler):
    _add_ambulance(client)
    body = _alert(client)
    assert body == {'accepted': True, 'incident_id': 1, 'reason': None}

    incident = client.get('/incidents/1').json()
    assert incident['status'] == 'pending'

    scheduler.advance(10)
    incident = client.get('/incidents/1').json()
    assert incident['status'] == 'assigned'
    assert incident['assigned_ambulance_id'] == 'A-1'
    assert incident['assigned_hospital_id'] == 'H-1'

    ambulances = client.get('/ambulances').json()
    assert ambulances[0]['status'] == 'en_route_incident'
    assert ambulances[0]['reserved_by'] == 1

    actions = [entry['action'] for entry in client.get('/incidents/1/logs').json()]
    assert actions == ['created', 'confirmed', 'assigned']


def test_rejected_hardware_requests_return_reason(client):
    resp = client.post('/hardware/requests', json={'device_uid': 'NOPE', 'request_type': 'alert', 'latitude': 1, 'longitude': 2})
    assert resp.status_code == 200
    assert resp.json() == {'accepted': False, 'incident_id': None, 'reason': 'unknown_device'}

    resp = client.post('/hardware/requests', json={'device_uid': 'DEV-OFF', 'request_type': 'alert', 'latitude': 1, 'longitude': 2})
    assert resp.json()['reason'] == 'inactive_device'

    resp = client.post('/hardware/requests', json={'device_uid': 'DEV-1', 'request_type': 'alert'})
    assert resp.json()['reason'] == 'invalid_request'


def test_operator_cancel_records_the_operator(client):
    _alert(client)
    resp = client.post('/incidents/1/cancel', headers={'X-Operator-Id': '9'})
    assert resp.status_code == 200
    assert resp.json()['outcome'] == 'canceled'
    assert resp.json()['incident']['status'] == 'canceled'

    logs = client.get('/incidents/1/logs').json()
    assert logs[-1]['actor'] == 'operator:9'

    again = client.post('/incidents/1/cancel', headers={'X-Operator-Id': '9'})
    assert again.json()['outcome'] == 'already_canceled'


def test_transport_and_completion(client, scheduler):
    _add_ambulance(client)
    _alert(client)
    scheduler.advance(10)

    assert client.post('/incidents/1/start', headers={'X-Operator-Id': '3'}).json()['status'] == 'in_progress'
    assert client.post('/incidents/1/complete', headers={'X-Operator-Id': '3'}).json()['status'] == 'completed'
    assert client.get('/ambulances').json()[0]['status'] == 'available'


def test_domain_errors_map_to_status_codes(client, scheduler):
    assert client.get('/incidents/42').status_code == 404
    assert client.get('/incidents/42/logs').json()['error'] == 'incident_not_found'

    _alert(client)
    invalid = client.post('/incidents/1/complete')
    assert invalid.status_code == 409
    assert invalid.json()['error'] == 'invalid_transition'
    assert invalid.json()['context']['from_status'] == 'pending'

    _add_ambulance(client, 'A-BUSY', status='busy')
    conflict = client.post('/incidents/1/manual-assign', json={'ambulance_id': 'A-BUSY', 'hospital_id': 'H-1'})
    assert conflict.status_code == 409
    assert conflict.json()['error'] == 'reservation_conflict'

    missing = client.post('/incidents/1/manual-assign', json={'ambulance_id': 'A-BUSY', 'hospital_id': 'H-9'})
    assert missing.status_code == 404

    assert client.post('/ambulances', json={'id': 'A-2', 'latitude': 1, 'longitude': 2, 'status': 'en_route_hospital'}).status_code == 422
    assert client.post('/devices', json={'uid': 'X'}).status_code == 422


def test_manual_assign(client):
    _add_ambulance(client)
    _alert(client)

    resp = client.post(
        '/incidents/1/manual-assign',
        json={'ambulance_id': 'A-1', 'hospital_id': 'H-1'},
        headers={'X-Operator-Id': '5'},
    )

    assert resp.status_code == 200
    assert resp.json()['status'] == 'assigned'
    assert resp.json()['mode'] == 'manual'


def test_flagged_incident_and_retry(client, scheduler):
    _alert(client)
    scheduler.advance(70)

    flagged = client.get('/incidents/flagged').json()
    assert [i['id'] for i in flagged] == [1]
    assert flagged[0]['no_ambulance_available'] is True

    _add_ambulance(client)
    resp = client.post('/incidents/1/retry-assignment', headers={'X-Operator-Id': '5'})
    assert resp.status_code == 200
    assert resp.json()['status'] == 'assigned'
    assert client.get('/incidents/flagged').json() == []


def test_ambulance_position_updates(client):
    _add_ambulance(client)
    moved = _add_ambulance(client, latitude=30.5, longitude=31.5, status='offline')

    assert moved['latitude'] == 30.5
    assert moved['status'] == 'offline'
    assert len(client.get('/ambulances').json()) == 1


def test_list_incidents_by_status(client):
    _alert(client)
    client.post('/incidents/1/cancel')

    assert [i['id'] for i in client.get('/incidents').json()] == [1]
    assert client.get('/incidents', params={'status': 'pending'}).json() == []
    assert client.get('/incidents', params={'status': 'bogus'}).status_code == 422


def test_pdf_export(client, scheduler):
    _add_ambulance(client)
    _alert(client)
    scheduler.advance(10)

    resp = client.get('/incidents/export/pdf')

    assert resp.status_code == 200
    assert resp.headers['content-type'] == 'application/pdf'
    assert resp.content.startswith(b'%PDF')


def test_websocket_streams_incident_events(client):
    with client.websocket_connect('/ws/events') as ws:
        _alert(client)
        event = ws.receive_json()

    assert event['kind'] == 'incident.pending'
    assert event['incident_id'] == 1
    assert event['payload']['incident']['status'] == 'pending'


def test_websocket_disconnect_releases_the_stream(client, scheduler):
    coordinator = app.dependency_overrides[get_coordinator]()
    with client.websocket_connect('/ws/events') as ws:
        _add_ambulance(client)
        assert ws.receive_json()['kind'] == 'ambulance.updated'
        assert coordinator.bus.subscriber_count == 1

    assert coordinator.bus.subscriber_count == 0
    _alert(client)
    scheduler.advance(10)
    assert client.get('/incidents/1').json()['status'] == 'assigned'
