"""Booking creation and the appointment status state machine.

The coordinator is the only writer of appointment rows. Conflict detection
re-runs at commit time under a per-(doctor, day) lock, so the slot list a
client saw earlier may be stale without ever producing a double booking.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from booking_backend.core.timeutils import days_touched, minute_of_day, normalize_timestamp, schedule_weekday
from booking_backend.database import apply_statement_timeout, doctor_day_lock, translate_persistence_errors
from booking_backend.models.appointment import (
    APPOINTMENT_STATUSES,
    APPOINTMENT_TYPES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    Appointment,
)
from booking_backend.models.user import ROLE_ADMIN, ROLE_DOCTOR, ROLE_PATIENT, User
from booking_backend.services import notifications
from booking_backend.services.availability_store import AvailabilityStore
from booking_backend.services.notifications import NotificationDispatcher
from booking_backend.services.slot_generator import active_appointments_between

logger = logging.getLogger(__name__)

PARTY_PATIENT = 'patient'
PARTY_DOCTOR = 'doctor'
PARTY_ADMIN = 'admin'

# current status -> target status -> parties allowed to make the move
STATUS_TRANSITIONS = {
    STATUS_PENDING: {
        STATUS_CONFIRMED: {PARTY_DOCTOR},
        STATUS_CANCELLED: {PARTY_DOCTOR, PARTY_PATIENT},
    },
    STATUS_CONFIRMED: {
        STATUS_COMPLETED: {PARTY_DOCTOR},
        STATUS_CANCELLED: {PARTY_DOCTOR, PARTY_PATIENT},
    },
}

STATUS_NOTIFICATIONS = {
    STATUS_CONFIRMED: notifications.APPOINTMENT_CONFIRMATION,
    STATUS_CANCELLED: notifications.APPOINTMENT_CANCELLATION,
    STATUS_COMPLETED: notifications.GENERAL,
}

MAX_PAGE_SIZE = 100


@dataclass
class AppointmentPage:
    items: list[Appointment]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.total_count else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1


def party_of(actor: User, appointment: Appointment) -> str | None:
    if actor.role == ROLE_ADMIN:
        return PARTY_ADMIN
    if actor.role == ROLE_DOCTOR and actor.id == appointment.doctor_id:
        return PARTY_DOCTOR
    if actor.role == ROLE_PATIENT and actor.id == appointment.patient_id:
        return PARTY_PATIENT
    return None


class BookingCoordinator:
    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher | None = None,
        store: AvailabilityStore | None = None,
        now: Callable[[], datetime] = datetime.now,
        duration_minutes: int = config.APPOINTMENT_DURATION_MINUTES,
        timeout_seconds: float = config.PERSISTENCE_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.store = store or AvailabilityStore(db, timeout_seconds=timeout_seconds)
        self.now = now
        self.duration_minutes = duration_minutes
        self.timeout_seconds = timeout_seconds

    def _resolve_patient_id(self, actor: User, doctor_id: int, patient_id: int | None) -> int:
        """Decide, once, whom the actor may book for."""
        if actor.role == ROLE_PATIENT:
            if patient_id is not None and patient_id != actor.id:
                raise PermissionDeniedError('Patients can only book appointments for themselves.')
            return actor.id

        if actor.role == ROLE_DOCTOR:
            if doctor_id != actor.id:
                raise PermissionDeniedError('Doctors can only book appointments into their own schedule.')
        elif actor.role != ROLE_ADMIN:
            raise PermissionDeniedError('You are not allowed to book appointments.')

        if patient_id is None:
            raise ValidationError('patientId is required when booking on behalf of a patient.')
        return patient_id

    def create_booking(
        self,
        actor: User,
        doctor_id: int,
        requested_at: datetime,
        appointment_type: str,
        symptoms: str | None = None,
        patient_id: int | None = None,
    ) -> Appointment:
        patient_id = self._resolve_patient_id(actor, doctor_id, patient_id)

        if appointment_type not in APPOINTMENT_TYPES:
            raise ValidationError(f'Appointment type must be one of {", ".join(APPOINTMENT_TYPES)}.')
        if symptoms is not None and len(symptoms) > config.MAX_SYMPTOMS_LENGTH:
            raise ValidationError(f'Symptoms must be {config.MAX_SYMPTOMS_LENGTH} characters or fewer.')

        with translate_persistence_errors(self.db, 'checking booking participants'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            self.store.require_doctor(doctor_id)
            self.store.require_patient(patient_id)

        start = normalize_timestamp(requested_at)
        if start <= self.now():
            raise ValidationError('Appointments must be scheduled in the future.')

        entry = self.store.find_entry_covering(doctor_id, schedule_weekday(start.date()), minute_of_day(start))
        if entry is None:
            raise ValidationError('Doctor is not available at this time.')

        end = start + timedelta(minutes=self.duration_minutes)

        with translate_persistence_errors(self.db, 'creating a booking'):
            with doctor_day_lock(self.db, doctor_id, days_touched(start, end), self.timeout_seconds):
                if active_appointments_between(self.db, doctor_id, start, end):
                    logger.warning('Rejected booking for doctor %s at %s: window already taken.', doctor_id, start)
                    raise ConflictError('Doctor already has an appointment at this time.')

                appointment = Appointment(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    scheduled_at=start,
                    duration_minutes=self.duration_minutes,
                    status=STATUS_PENDING,
                    appointment_type=appointment_type,
                    symptoms=symptoms,
                )
                self.db.add(appointment)
                self.db.commit()
                self.db.refresh(appointment)

        logger.info('Booked appointment %s for doctor %s at %s.', appointment.id, doctor_id, start)

        when = start.strftime('%Y-%m-%d %H:%M')
        self._notify(
            doctor_id,
            notifications.NEW_APPOINTMENT,
            'New Appointment Request',
            f'You have a new appointment request on {when}.',
        )
        self._notify(
            patient_id,
            notifications.GENERAL,
            'Appointment Requested',
            f'Your appointment request for {when} has been received and is awaiting confirmation.',
        )
        return appointment

    def _load(self, appointment_id: int, for_update: bool = False) -> Appointment:
        query = self.db.query(Appointment).filter(Appointment.id == appointment_id)
        if for_update:
            query = query.with_for_update()
        appointment = query.first()
        if appointment is None:
            raise NotFoundError('Appointment not found.')
        return appointment

    def get_appointment(self, actor: User, appointment_id: int) -> Appointment:
        with translate_persistence_errors(self.db, 'reading an appointment'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            appointment = self._load(appointment_id)
        if party_of(actor, appointment) is None:
            raise PermissionDeniedError('You do not have access to this appointment.')
        return appointment

    def update_status(
        self,
        actor: User,
        appointment_id: int,
        status: str,
        cancel_reason: str | None = None,
    ) -> Appointment:
        if status not in APPOINTMENT_STATUSES:
            raise ValidationError(f'Status must be one of {", ".join(APPOINTMENT_STATUSES)}.')

        with translate_persistence_errors(self.db, 'updating an appointment'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            appointment = self._load(appointment_id, for_update=True)

            party = party_of(actor, appointment)
            if party is None:
                raise PermissionDeniedError('You do not have access to this appointment.')

            allowed_parties = STATUS_TRANSITIONS.get(appointment.status, {}).get(status)
            if allowed_parties is None:
                raise ValidationError(f'Cannot change an appointment from {appointment.status} to {status}.')
            if party != PARTY_ADMIN and party not in allowed_parties:
                raise PermissionDeniedError(
                    f'Only the {" or ".join(sorted(allowed_parties))} can mark this appointment {status}.'
                )

            previous_status = appointment.status
            appointment.status = status
            if status == STATUS_CANCELLED and cancel_reason:
                appointment.cancel_reason = cancel_reason.strip()
            self.db.commit()
            self.db.refresh(appointment)

        logger.info(
            'Appointment %s moved from %s to %s by %s %s.',
            appointment.id,
            previous_status,
            status,
            party,
            actor.id,
        )

        message = f'Your appointment on {appointment.scheduled_at:%Y-%m-%d %H:%M} has been {status.lower()}'
        if appointment.cancel_reason and status == STATUS_CANCELLED:
            message = f'{message}: {appointment.cancel_reason}'
        recipients = []
        if party != PARTY_PATIENT:
            recipients.append(appointment.patient_id)
        if party != PARTY_DOCTOR:
            recipients.append(appointment.doctor_id)
        for user_id in recipients:
            self._notify(user_id, STATUS_NOTIFICATIONS[status], f'Appointment {status.lower()}', message)

        return appointment

    def list_appointments(
        self,
        actor: User,
        status: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        doctor_id: int | None = None,
        patient_id: int | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> AppointmentPage:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f'page must be at least 1 and limit between 1 and {MAX_PAGE_SIZE}.')
        if status is not None and status not in APPOINTMENT_STATUSES:
            raise ValidationError(f'Status must be one of {", ".join(APPOINTMENT_STATUSES)}.')

        query = self.db.query(Appointment)
        if status:
            query = query.filter(Appointment.status == status)
        if date_from:
            query = query.filter(Appointment.scheduled_at >= normalize_timestamp(date_from))
        if date_to:
            query = query.filter(Appointment.scheduled_at <= normalize_timestamp(date_to))

        if actor.role == ROLE_PATIENT:
            query = query.filter(Appointment.patient_id == actor.id)
        elif actor.role == ROLE_DOCTOR:
            query = query.filter(Appointment.doctor_id == actor.id)
        elif actor.role == ROLE_ADMIN:
            if doctor_id is not None:
                query = query.filter(Appointment.doctor_id == doctor_id)
            if patient_id is not None:
                query = query.filter(Appointment.patient_id == patient_id)
        else:
            raise PermissionDeniedError('You are not allowed to list appointments.')

        with translate_persistence_errors(self.db, 'listing appointments'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            total_count = query.count()
            items = query.order_by(Appointment.scheduled_at.desc(), Appointment.id.desc()).offset(
                (page - 1) * limit
            ).limit(limit).all()

        return AppointmentPage(items=items, total_count=total_count, page=page, limit=limit)

    def _notify(self, user_id: int, notification_type: str, title: str, message: str) -> None:
        if self.dispatcher is not None:
            self.dispatcher.push(user_id, notification_type, title, message)
