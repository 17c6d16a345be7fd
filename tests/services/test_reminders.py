from datetime import datetime

from booking_backend.models.appointment import STATUS_CANCELLED, STATUS_CONFIRMED, STATUS_PENDING, Appointment
from booking_backend.services.notifications import NotificationDispatcher
from booking_backend.services.reminders import send_appointment_reminders

NOW = datetime(2030, 1, 7, 8, 0)


def _appointment(db, doctor, patient, scheduled_at, status):
    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        scheduled_at=scheduled_at,
        duration_minutes=60,
        status=status,
        appointment_type='VIRTUAL',
    )
    db.add(appointment)
    db.commit()
    return appointment


def test_reminders_go_to_patients_of_upcoming_confirmed_appointments(db, doctor, patient, make_user, sink) -> None:
    other_patient = make_user('patient')
    _appointment(db, doctor, patient, datetime(2030, 1, 7, 15, 30), STATUS_CONFIRMED)
    _appointment(db, doctor, other_patient, datetime(2030, 1, 8, 8, 0), STATUS_CONFIRMED)

    sent = send_appointment_reminders(db, NotificationDispatcher(sink), now=NOW)

    assert sent == 2
    assert [event[0] for event in sink.events] == [patient.id, other_patient.id]
    assert sink.events[0][1] == 'APPOINTMENT_REMINDER'
    assert sink.events[0][3] == 'You have an appointment on 2030-01-07 at 15:30. Please be on time.'


def test_reminders_skip_other_statuses_and_appointments_outside_lookahead(db, doctor, patient, sink) -> None:
    _appointment(db, doctor, patient, datetime(2030, 1, 7, 10, 0), STATUS_PENDING)
    _appointment(db, doctor, patient, datetime(2030, 1, 7, 11, 0), STATUS_CANCELLED)
    _appointment(db, doctor, patient, datetime(2030, 1, 7, 7, 0), STATUS_CONFIRMED)
    _appointment(db, doctor, patient, datetime(2030, 1, 8, 9, 0), STATUS_CONFIRMED)

    assert send_appointment_reminders(db, NotificationDispatcher(sink), now=NOW) == 0
    assert sink.events == []


def test_reminder_lookahead_is_configurable(db, doctor, patient, sink) -> None:
    _appointment(db, doctor, patient, datetime(2030, 1, 8, 9, 0), STATUS_CONFIRMED)

    assert send_appointment_reminders(db, NotificationDispatcher(sink), now=NOW, lookahead_hours=48) == 1
