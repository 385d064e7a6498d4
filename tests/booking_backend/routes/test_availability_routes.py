from datetime import time

import pytest
from conftest import insert_appointment, seed_tenant
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from booking_backend.core import config
from booking_backend.database import get_db
from booking_backend.main import app
from booking_backend.routes import availability_routes


@pytest.fixture
def client(db, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr('booking_backend.routes.availability_routes.ensure_database_ready', lambda: None)

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_list_available_slots_returns_free_starts(db, client) -> None:
    tenant = seed_tenant(db, shifts=((time(9, 0), time(12, 0)),))
    insert_appointment(db, tenant, time(10, 0), time(10, 30))

    response = client.get(
        '/availability/slots',
        params={
            'business_id': tenant.business.id,
            'staff_id': tenant.staff.id,
            'date': '2030-03-04',
            'duration_minutes': 30,
            'slot_granularity_minutes': 30,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body['duration_minutes'] == 30
    assert [slot['start_time'] for slot in body['available_slots']] == [
        '09:00:00',
        '09:30:00',
        '10:30:00',
        '11:00:00',
        '11:30:00',
    ]
    assert body['available_slots'][0]['end_time'] == '09:30:00'


def test_list_available_slots_rejects_zero_duration(client, tenant) -> None:
    response = client.get(
        '/availability/slots',
        params={
            'business_id': tenant.business.id,
            'staff_id': tenant.staff.id,
            'date': '2030-03-04',
            'duration_minutes': 0,
        },
    )

    assert response.status_code == 400
    assert response.json() == {'detail': 'Duration must be a positive number of minutes.'}


def test_list_available_slots_returns_not_found_for_unknown_staff(client, tenant) -> None:
    response = client.get(
        '/availability/slots',
        params={'business_id': tenant.business.id, 'staff_id': 9999, 'date': '2030-03-04'},
    )

    assert response.status_code == 404
    assert response.json()['detail'] == 'Staff member not found.'


def test_list_staff_shift_dates(client, tenant) -> None:
    response = client.get(f'/availability/staff/{tenant.staff.id}/dates', params={'business_id': tenant.business.id})

    assert response.status_code == 200
    assert response.json()['available_dates'] == ['2030-03-04']


def test_list_booked_slots(db, client, tenant) -> None:
    appointment = insert_appointment(db, tenant, time(14, 0), time(14, 30))

    response = client.get(
        f'/availability/businesses/{tenant.business.id}/booked',
        params={'start_date': '2030-03-01', 'end_date': '2030-03-31'},
    )

    assert response.status_code == 200
    body = response.json()
    assert body['booked_days'] == ['2030-03-04']
    assert body['booked_slots'][0]['appointment_id'] == appointment.id
    assert body['booked_slots'][0]['status'] == 'confirmed'


def test_ensure_database_ready_maps_schema_errors_to_service_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail() -> None:
        raise OperationalError('SELECT 1', {}, Exception('connection refused'))

    monkeypatch.setattr(availability_routes, 'ensure_appointment_schema', fail)

    with pytest.raises(HTTPException) as exception_info:
        availability_routes.ensure_database_ready()

    assert exception_info.value.status_code == 503


def test_list_available_slots_reports_bad_business_hours_as_server_error(
    client,
    tenant,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(config, 'AVAILABILITY_MODE', 'business_hours')
    monkeypatch.setattr(config, 'BUSINESS_OPEN_TIME', '24:00')

    response = client.get(
        '/availability/slots',
        params={'business_id': tenant.business.id, 'staff_id': tenant.staff.id, 'date': '2030-03-04'},
    )

    assert response.status_code == 500
    assert response.json()['detail'].startswith('Business hours are misconfigured')
