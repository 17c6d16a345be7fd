from datetime import datetime

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from booking_backend.core import config
from booking_backend.models.appointment import Appointment
from booking_backend.routes.appointment_routes import (
    CreateBookingRequest,
    UpdateStatusRequest,
    create_booking,
    get_booking,
)
from booking_backend.services import rate_limiter
from booking_backend.services.notifications import NotificationDispatcher


def _booking_body(doctor_id: int, when: str = '2030-01-07T09:00:00', **overrides) -> dict:
    body = {'doctorId': doctor_id, 'when': when, 'type': 'in_person'}
    body.update(overrides)
    return body


def test_create_booking_request_normalizes_type_and_symptoms() -> None:
    request = CreateBookingRequest.model_validate(
        {'doctorId': 4, 'when': '2030-01-07T09:00:00', 'type': ' virtual ', 'symptoms': '  cough  '}
    )

    assert request.appointment_type == 'VIRTUAL'
    assert request.symptoms == 'cough'
    assert request.patient_id is None


def test_create_booking_request_treats_blank_symptoms_as_missing() -> None:
    request = CreateBookingRequest.model_validate({'doctorId': 4, 'when': '2030-01-07T09:00:00', 'type': 'VIRTUAL', 'symptoms': '   '})

    assert request.symptoms is None


@pytest.mark.parametrize(
    'overrides',
    [
        {'type': 'TELEPATHY'},
        {'symptoms': 'x' * (config.MAX_SYMPTOMS_LENGTH + 1)},
        {'when': 'next tuesday'},
    ],
)
def test_create_booking_request_rejects_invalid_input(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        CreateBookingRequest.model_validate(_booking_body(4, **overrides))


def test_update_status_request_normalizes_status() -> None:
    assert UpdateStatusRequest.model_validate({'status': ' confirmed '}).status == 'CONFIRMED'

    with pytest.raises(ValidationError):
        UpdateStatusRequest.model_validate({'status': 'RESCHEDULED'})


def test_create_booking_route_maps_conflict_to_409(db, monday_morning, patient, sink, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('booking_backend.routes.appointment_routes.ensure_database_ready', lambda: None)
    data = CreateBookingRequest.model_validate(_booking_body(monday_morning.id))
    dispatcher = NotificationDispatcher(sink)

    created = create_booking(data=data, current_user=patient, db=db, dispatcher=dispatcher)
    with pytest.raises(HTTPException) as exception_info:
        create_booking(data=data, current_user=patient, db=db, dispatcher=dispatcher)

    assert created.status == 'PENDING'
    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == {
        'kind': 'conflict',
        'message': 'Doctor already has an appointment at this time.',
    }


def test_get_booking_route_hides_other_patients_appointments(db, monday_morning, patient, make_user, sink, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('booking_backend.routes.appointment_routes.ensure_database_ready', lambda: None)
    data = CreateBookingRequest.model_validate(_booking_body(monday_morning.id))
    created = create_booking(data=data, current_user=patient, db=db, dispatcher=NotificationDispatcher(sink))
    stranger = make_user('patient')

    with pytest.raises(HTTPException) as exception_info:
        get_booking(appointment_id=created.appointment_id, current_user=stranger, db=db)

    assert exception_info.value.status_code == 403


def test_http_booking_flow(client, auth_headers, monday_morning, patient, sink) -> None:
    response = client.post('/appointments', json=_booking_body(monday_morning.id), headers=auth_headers(patient))

    assert response.status_code == 201
    body = response.json()
    assert body['status'] == 'PENDING'
    assert isinstance(body['appointmentId'], int)
    assert {event[0] for event in sink.events} == {monday_morning.id, patient.id}

    slots = client.get(f'/doctors/{monday_morning.id}/slots', params={'date': '2030-01-07'})
    assert slots.json()['availableSlots'] == []

    conflict = client.post(
        '/appointments',
        json=_booking_body(monday_morning.id, when='2030-01-07T09:30:00'),
        headers=auth_headers(patient),
    )
    assert conflict.status_code == 409
    assert conflict.json()['detail']['kind'] == 'conflict'


def test_http_booking_outside_schedule_is_a_validation_error(client, auth_headers, monday_morning, patient) -> None:
    response = client.post(
        '/appointments',
        json=_booking_body(monday_morning.id, when='2030-01-07T10:00:00'),
        headers=auth_headers(patient),
    )

    assert response.status_code == 400
    assert response.json()['detail'] == {'kind': 'validation_error', 'message': 'Doctor is not available at this time.'}


def test_http_booking_into_another_doctors_schedule_is_forbidden(client, auth_headers, make_user, monday_morning, patient) -> None:
    other_doctor = make_user('doctor')

    response = client.post(
        '/appointments',
        json=_booking_body(monday_morning.id, patientId=patient.id),
        headers=auth_headers(other_doctor),
    )

    assert response.status_code == 403
    assert response.json()['detail']['kind'] == 'permission_denied'


def test_http_malformed_booking_body_returns_400(client, auth_headers, monday_morning, patient) -> None:
    response = client.post(
        '/appointments',
        json={'doctorId': monday_morning.id, 'type': 'VIRTUAL'},
        headers=auth_headers(patient),
    )

    assert response.status_code == 400
    assert response.json()['detail']['kind'] == 'validation_error'


def test_http_booking_rate_limit_returns_429_with_retry_after(client, auth_headers, monday_morning, patient) -> None:
    limiter = rate_limiter.get_rate_limiter()
    for _ in range(config.RATE_LIMIT_BOOKING_MAX):
        limiter.check_and_increment(
            f'booking-create:user:{patient.id}',
            config.RATE_LIMIT_BOOKING_WINDOW_MS,
            config.RATE_LIMIT_BOOKING_MAX,
        )

    response = client.post('/appointments', json=_booking_body(monday_morning.id), headers=auth_headers(patient))

    assert response.status_code == 429
    assert response.json()['detail']['kind'] == 'rate_limited'
    assert 'resetAt' in response.json()['detail']
    assert int(response.headers['Retry-After']) >= 1


def test_http_status_update_and_listing(client, auth_headers, db, monday_morning, patient, sink) -> None:
    created = client.post('/appointments', json=_booking_body(monday_morning.id), headers=auth_headers(patient)).json()
    sink.events.clear()

    confirmed = client.patch(
        f'/appointments/{created["appointmentId"]}',
        json={'status': 'CONFIRMED'},
        headers=auth_headers(monday_morning),
    )

    assert confirmed.status_code == 200
    assert confirmed.json()['status'] == 'CONFIRMED'
    assert confirmed.json()['type'] == 'IN_PERSON'
    assert confirmed.json()['endsAt'] == '2030-01-07T10:00:00'
    assert sink.events[0][:2] == (patient.id, 'APPOINTMENT_CONFIRMATION')

    listing = client.get('/appointments', params={'status': 'confirmed'}, headers=auth_headers(patient))

    assert listing.status_code == 200
    assert [item['id'] for item in listing.json()['data']] == [created['appointmentId']]
    assert listing.json()['meta'] == {
        'totalCount': 1,
        'page': 1,
        'limit': 10,
        'totalPages': 1,
        'hasNextPage': False,
        'hasPreviousPage': False,
    }

    reverted = client.patch(
        f'/appointments/{created["appointmentId"]}',
        json={'status': 'PENDING'},
        headers=auth_headers(monday_morning),
    )
    assert reverted.status_code == 400
    db.expire_all()
    assert db.get(Appointment, created['appointmentId']).status == 'CONFIRMED'


def test_http_get_unknown_appointment_returns_404(client, auth_headers, patient) -> None:
    response = client.get('/appointments/9999', headers=auth_headers(patient))

    assert response.status_code == 404
    assert response.json()['detail']['kind'] == 'not_found'


def test_root_reports_service_running(client) -> None:
    assert client.get('/').json() == {'status': 'Doctor Booking API Running'}


def test_http_booking_records_naive_local_time(client, auth_headers, db, monday_morning, patient) -> None:
    client.post('/appointments', json=_booking_body(monday_morning.id, when='2030-01-07T09:00:45'), headers=auth_headers(patient))

    stored = db.query(Appointment).one()
    assert stored.scheduled_at == datetime(2030, 1, 7, 9, 0)
