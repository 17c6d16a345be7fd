from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from booking_backend.auth.dependencies import get_current_user, get_db
from booking_backend.core import config
from booking_backend.core.errors import BookingError
from booking_backend.core.timeutils import format_hhmm, parse_hhmm
from booking_backend.models.user import User
from booking_backend.routes.common import (
    ensure_database_ready,
    limit_by_client,
    limit_by_user,
    raise_http_error,
)
from booking_backend.services.availability_store import AvailabilityStore, ScheduleWindow, ensure_can_manage_schedule
from booking_backend.services.slot_generator import SlotGenerator

router = APIRouter(tags=['schedules'])

query_rate_limit = limit_by_client('schedule-query', config.RATE_LIMIT_QUERY_WINDOW_MS, config.RATE_LIMIT_QUERY_MAX)
schedule_rate_limit = limit_by_user(
    'schedule-replace',
    config.RATE_LIMIT_SCHEDULE_WINDOW_MS,
    config.RATE_LIMIT_SCHEDULE_MAX,
)


class ScheduleEntryPayload(BaseModel):
    weekday: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_available: bool = True
    max_appointments: int = Field(default=1, ge=1)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator('start_time')
    @classmethod
    def validate_start_time(cls, value: str) -> str:
        return format_hhmm(parse_hhmm(value))

    @field_validator('end_time')
    @classmethod
    def validate_end_time(cls, value: str) -> str:
        return format_hhmm(parse_hhmm(value, allow_end_of_day=True))

    def to_window(self) -> ScheduleWindow:
        return ScheduleWindow(
            weekday=self.weekday,
            start_minute=parse_hhmm(self.start_time),
            end_minute=parse_hhmm(self.end_time, allow_end_of_day=True),
            is_available=self.is_available,
            max_appointments=self.max_appointments,
        )

    @classmethod
    def from_window(cls, window: ScheduleWindow) -> 'ScheduleEntryPayload':
        return cls(
            weekday=window.weekday,
            start_time=format_hhmm(window.start_minute),
            end_time=format_hhmm(window.end_minute),
            is_available=window.is_available,
            max_appointments=window.max_appointments,
        )


class ReplaceScheduleResponse(BaseModel):
    message: str
    count: int


class SlotListResponse(BaseModel):
    date: date
    available_slots: list[str]

    class Config:
        alias_generator = to_camel
        populate_by_name = True


@router.get(
    '/{doctor_id}/schedule',
    response_model=list[ScheduleEntryPayload],
    dependencies=[Depends(query_rate_limit)],
)
def get_doctor_schedule(doctor_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        windows = AvailabilityStore(db).get_schedule(doctor_id)
    except BookingError as exc:
        raise_http_error(exc)

    return [ScheduleEntryPayload.from_window(window) for window in windows]


@router.put(
    '/{doctor_id}/schedule',
    response_model=ReplaceScheduleResponse,
    dependencies=[Depends(schedule_rate_limit)],
)
def replace_doctor_schedule(
    doctor_id: int,
    entries: list[ScheduleEntryPayload],
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        ensure_can_manage_schedule(current_user, doctor_id)
        count = AvailabilityStore(db).replace_schedule(doctor_id, [entry.to_window() for entry in entries])
    except BookingError as exc:
        raise_http_error(exc)

    return ReplaceScheduleResponse(message='Schedule updated successfully', count=count)


@router.get(
    '/{doctor_id}/slots',
    response_model=SlotListResponse,
    dependencies=[Depends(query_rate_limit)],
)
def list_available_slots(
    doctor_id: int,
    slot_date: date = Query(..., alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        slots = SlotGenerator(db).generate_slots(doctor_id, slot_date)
    except BookingError as exc:
        raise_http_error(exc)

    return SlotListResponse(date=slot_date, available_slots=[slot.start_time for slot in slots])
