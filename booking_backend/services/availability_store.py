"""Weekly recurring availability per doctor.

A schedule is only ever replaced as a whole: every entry for the doctor is
deleted and the new set inserted in the same transaction, so readers see
either the old schedule or the new one, never an empty or half-written one.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from booking_backend.core.timeutils import MINUTES_PER_DAY, format_hhmm
from booking_backend.database import apply_statement_timeout, doctor_schedule_lock, translate_persistence_errors
from booking_backend.models.schedule import ScheduleEntry
from booking_backend.models.user import ROLE_ADMIN, ROLE_DOCTOR, ROLE_PATIENT, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleWindow:
    weekday: int
    start_minute: int
    end_minute: int
    is_available: bool = True
    max_appointments: int = 1

    @classmethod
    def from_entry(cls, entry: ScheduleEntry) -> 'ScheduleWindow':
        return cls(
            weekday=entry.weekday,
            start_minute=entry.start_minute,
            end_minute=entry.end_minute,
            is_available=entry.is_available,
            max_appointments=entry.max_appointments,
        )

    def sort_key(self) -> tuple[int, int]:
        return self.weekday, self.start_minute

    def covers(self, minute: int) -> bool:
        return self.start_minute <= minute < self.end_minute


def validate_schedule(windows: Iterable[ScheduleWindow]) -> list[ScheduleWindow]:
    """Check every window and return them in canonical (weekday, start) order."""
    ordered = sorted(windows, key=ScheduleWindow.sort_key)

    for window in ordered:
        if not 0 <= window.weekday <= 6:
            raise ValidationError(f'Weekday must be between 0 (Sunday) and 6 (Saturday), got {window.weekday}.')
        if not 0 <= window.start_minute < window.end_minute <= MINUTES_PER_DAY:
            raise ValidationError(
                f'Start time must be before end time '
                f'({format_hhmm(window.start_minute)}-{format_hhmm(window.end_minute)}).'
            )
        if window.max_appointments < 1:
            raise ValidationError('maxAppointments must be at least 1.')

    for previous, current in zip(ordered, ordered[1:]):
        if previous.weekday == current.weekday and current.start_minute < previous.end_minute:
            raise ValidationError(
                f'Schedule entries overlap on weekday {current.weekday}: '
                f'{format_hhmm(previous.start_minute)}-{format_hhmm(previous.end_minute)} and '
                f'{format_hhmm(current.start_minute)}-{format_hhmm(current.end_minute)}.'
            )

    return ordered


def ensure_can_manage_schedule(actor: User, doctor_id: int) -> None:
    if actor.role == ROLE_ADMIN:
        return
    if actor.role == ROLE_DOCTOR and actor.id == doctor_id:
        return
    raise PermissionDeniedError('Only the doctor or an admin can change this schedule.')


class AvailabilityStore:
    def __init__(self, db: Session, timeout_seconds: float = config.PERSISTENCE_TIMEOUT_SECONDS):
        self.db = db
        self.timeout_seconds = timeout_seconds

    def require_doctor(self, doctor_id: int) -> User:
        doctor = self.db.query(User).filter(User.id == doctor_id, User.role == ROLE_DOCTOR).first()
        if doctor is None:
            raise NotFoundError('Doctor not found.')
        return doctor

    def require_patient(self, patient_id: int) -> User:
        patient = self.db.query(User).filter(User.id == patient_id, User.role == ROLE_PATIENT).first()
        if patient is None:
            raise NotFoundError('Patient not found.')
        return patient

    def get_schedule(self, doctor_id: int) -> list[ScheduleWindow]:
        with translate_persistence_errors(self.db, 'reading a schedule'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            self.require_doctor(doctor_id)
            entries = self.db.query(ScheduleEntry).filter(
                ScheduleEntry.doctor_id == doctor_id,
            ).order_by(ScheduleEntry.weekday.asc(), ScheduleEntry.start_minute.asc()).all()

        return [ScheduleWindow.from_entry(entry) for entry in entries]

    def get_available_entries(self, doctor_id: int, weekday: int) -> list[ScheduleWindow]:
        with translate_persistence_errors(self.db, 'reading a schedule'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            entries = self.db.query(ScheduleEntry).filter(
                ScheduleEntry.doctor_id == doctor_id,
                ScheduleEntry.weekday == weekday,
                ScheduleEntry.is_available.is_(True),
            ).order_by(ScheduleEntry.start_minute.asc()).all()

        return [ScheduleWindow.from_entry(entry) for entry in entries]

    def find_entry_covering(self, doctor_id: int, weekday: int, minute: int) -> ScheduleWindow | None:
        for window in self.get_available_entries(doctor_id, weekday):
            if window.covers(minute):
                return window
        return None

    def replace_schedule(self, doctor_id: int, windows: Iterable[ScheduleWindow]) -> int:
        ordered = validate_schedule(windows)

        with translate_persistence_errors(self.db, 'replacing a schedule'):
            self.require_doctor(doctor_id)

            with doctor_schedule_lock(self.db, doctor_id, self.timeout_seconds):
                self.db.query(ScheduleEntry).filter(
                    ScheduleEntry.doctor_id == doctor_id,
                ).delete(synchronize_session=False)
                self.db.add_all(
                    [
                        ScheduleEntry(
                            doctor_id=doctor_id,
                            weekday=window.weekday,
                            start_minute=window.start_minute,
                            end_minute=window.end_minute,
                            is_available=window.is_available,
                            max_appointments=window.max_appointments,
                        )
                        for window in ordered
                    ]
                )
                self.db.commit()

        logger.info('Replaced schedule for doctor %s with %d entries.', doctor_id, len(ordered))
        return len(ordered)
