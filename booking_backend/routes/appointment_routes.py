from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from booking_backend.auth.dependencies import get_current_user, get_db
from booking_backend.core import config
from booking_backend.core.errors import BookingError
from booking_backend.models.appointment import APPOINTMENT_STATUSES, APPOINTMENT_TYPES, Appointment
from booking_backend.models.user import User
from booking_backend.routes.common import ensure_database_ready, get_dispatcher, limit_by_user, raise_http_error
from booking_backend.services.booking_coordinator import BookingCoordinator
from booking_backend.services.notifications import NotificationDispatcher

router = APIRouter(tags=['appointments'])

booking_rate_limit = limit_by_user('booking-create', config.RATE_LIMIT_BOOKING_WINDOW_MS, config.RATE_LIMIT_BOOKING_MAX)
status_rate_limit = limit_by_user('booking-status', config.RATE_LIMIT_BOOKING_WINDOW_MS, config.RATE_LIMIT_BOOKING_MAX)


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CreateBookingRequest(CamelModel):
    doctor_id: int
    patient_id: int | None = None
    when: datetime
    appointment_type: str = Field(alias='type')
    symptoms: str | None = None

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in APPOINTMENT_TYPES:
            raise ValueError(f'Appointment type must be one of {", ".join(APPOINTMENT_TYPES)}.')
        return normalized

    @field_validator('symptoms')
    @classmethod
    def validate_symptoms(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > config.MAX_SYMPTOMS_LENGTH:
            raise ValueError(f'Symptoms must be {config.MAX_SYMPTOMS_LENGTH} characters or fewer.')

        return normalized


class CreateBookingResponse(CamelModel):
    appointment_id: int
    status: str


class UpdateStatusRequest(CamelModel):
    status: str
    cancel_reason: str | None = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValueError(f'Status must be one of {", ".join(APPOINTMENT_STATUSES)}.')
        return normalized


class AppointmentResponse(CamelModel):
    id: int
    patient_id: int
    doctor_id: int
    scheduled_at: datetime
    ends_at: datetime
    duration_minutes: int
    status: str
    appointment_type: str = Field(alias='type')
    symptoms: str | None = None
    notes: str | None = None
    cancel_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PageMeta(CamelModel):
    total_count: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class AppointmentListResponse(CamelModel):
    data: list[AppointmentResponse]
    meta: PageMeta


def to_appointment_response(appointment: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        scheduled_at=appointment.scheduled_at,
        ends_at=appointment.ends_at,
        duration_minutes=appointment.duration_minutes,
        status=appointment.status,
        appointment_type=appointment.appointment_type,
        symptoms=appointment.symptoms,
        notes=appointment.notes,
        cancel_reason=appointment.cancel_reason,
        created_at=appointment.created_at,
        updated_at=appointment.updated_at,
    )


@router.post(
    '',
    response_model=CreateBookingResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limit)],
)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    ensure_database_ready()

    try:
        appointment = BookingCoordinator(db, dispatcher).create_booking(
            current_user,
            doctor_id=data.doctor_id,
            requested_at=data.when,
            appointment_type=data.appointment_type,
            symptoms=data.symptoms,
            patient_id=data.patient_id,
        )
    except BookingError as exc:
        raise_http_error(exc)

    return CreateBookingResponse(appointment_id=appointment.id, status=appointment.status)


@router.patch(
    '/{appointment_id}',
    response_model=AppointmentResponse,
    dependencies=[Depends(status_rate_limit)],
)
def update_booking_status(
    appointment_id: int,
    data: UpdateStatusRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    ensure_database_ready()

    try:
        appointment = BookingCoordinator(db, dispatcher).update_status(
            current_user,
            appointment_id,
            data.status,
            cancel_reason=data.cancel_reason,
        )
    except BookingError as exc:
        raise_http_error(exc)

    return to_appointment_response(appointment)


@router.get('', response_model=AppointmentListResponse)
def list_appointments(
    appointment_status: str | None = Query(default=None, alias='status'),
    date_from: datetime | None = Query(default=None, alias='from'),
    date_to: datetime | None = Query(default=None, alias='to'),
    doctor_id: int | None = Query(default=None, alias='doctorId'),
    patient_id: int | None = Query(default=None, alias='patientId'),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        result = BookingCoordinator(db).list_appointments(
            current_user,
            status=appointment_status.strip().upper() if appointment_status else None,
            date_from=date_from,
            date_to=date_to,
            doctor_id=doctor_id,
            patient_id=patient_id,
            page=page,
            limit=limit,
        )
    except BookingError as exc:
        raise_http_error(exc)

    return AppointmentListResponse(
        data=[to_appointment_response(appointment) for appointment in result.items],
        meta=PageMeta(
            total_count=result.total_count,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
            has_next_page=result.has_next_page,
            has_previous_page=result.has_previous_page,
        ),
    )


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_booking(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = BookingCoordinator(db).get_appointment(current_user, appointment_id)
    except BookingError as exc:
        raise_http_error(exc)

    return to_appointment_response(appointment)
