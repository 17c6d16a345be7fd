"""Bookable slot derivation.

Slots are recomputed on every query from the doctor's available schedule
entries and the active appointments of that day. A candidate start is offered
while the number of active appointments overlapping its booking window
``[start, start + duration)`` stays below the owning entry's capacity.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.core.errors import PersistenceError
from booking_backend.core.timeutils import at_minute, format_hhmm, intervals_overlap, schedule_weekday
from booking_backend.database import apply_statement_timeout, translate_persistence_errors
from booking_backend.models.appointment import STATUS_CANCELLED, Appointment
from booking_backend.services.availability_store import AvailabilityStore

logger = logging.getLogger(__name__)

# No appointment lasts longer than a day, so this look-back catches every
# appointment that could still be running at the start of a window.
APPOINTMENT_LOOKBACK = timedelta(days=1)


@dataclass(frozen=True)
class Slot:
    doctor_id: int
    date: date
    start_minute: int
    capacity_remaining: int

    @property
    def start_time(self) -> str:
        return format_hhmm(self.start_minute)

    @property
    def starts_at(self) -> datetime:
        return at_minute(self.date, self.start_minute)


def active_appointments_between(db: Session, doctor_id: int, start: datetime, end: datetime) -> list[Appointment]:
    """Non-cancelled appointments of the doctor whose window overlaps [start, end)."""
    candidates = db.query(Appointment).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.status != STATUS_CANCELLED,
        Appointment.scheduled_at < end,
        Appointment.scheduled_at > start - APPOINTMENT_LOOKBACK,
    ).order_by(Appointment.scheduled_at.asc()).all()

    return [
        appointment
        for appointment in candidates
        if intervals_overlap(appointment.scheduled_at, appointment.ends_at, start, end)
    ]


class SlotGenerator:
    def __init__(
        self,
        db: Session,
        store: AvailabilityStore | None = None,
        duration_minutes: int = config.APPOINTMENT_DURATION_MINUTES,
        step_minutes: int = config.SLOT_STEP_MINUTES,
        attempts: int = config.SLOT_QUERY_ATTEMPTS,
        timeout_seconds: float = config.PERSISTENCE_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.store = store or AvailabilityStore(db, timeout_seconds=timeout_seconds)
        self.timeout_seconds = timeout_seconds
        self.duration = timedelta(minutes=duration_minutes)
        self.step_minutes = step_minutes
        self.attempts = max(1, attempts)

    def generate_slots(self, doctor_id: int, day: date) -> list[Slot]:
        # Read-only; transient storage failures are retried.
        attempt = 1
        while True:
            try:
                return self._generate(doctor_id, day)
            except PersistenceError:
                if attempt >= self.attempts:
                    raise
                logger.warning('Slot query for doctor %s on %s failed, retrying (attempt %d).', doctor_id, day, attempt)
                attempt += 1

    def _generate(self, doctor_id: int, day: date) -> list[Slot]:
        with translate_persistence_errors(self.db, 'generating slots'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            self.store.require_doctor(doctor_id)
        entries = self.store.get_available_entries(doctor_id, schedule_weekday(day))
        if not entries:
            return []

        range_start = at_minute(day, min(entry.start_minute for entry in entries))
        range_end = at_minute(day, max(entry.end_minute for entry in entries)) + self.duration
        with translate_persistence_errors(self.db, 'generating slots'):
            apply_statement_timeout(self.db, self.timeout_seconds)
            appointments = active_appointments_between(self.db, doctor_id, range_start, range_end)

        slots: dict[int, Slot] = {}
        for entry in entries:
            for minute in range(entry.start_minute, entry.end_minute, self.step_minutes):
                if minute in slots:
                    continue
                window_start = at_minute(day, minute)
                window_end = window_start + self.duration
                taken = sum(
                    1
                    for appointment in appointments
                    if intervals_overlap(appointment.scheduled_at, appointment.ends_at, window_start, window_end)
                )
                if taken < entry.max_appointments:
                    slots[minute] = Slot(
                        doctor_id=doctor_id,
                        date=day,
                        start_minute=minute,
                        capacity_remaining=entry.max_appointments - taken,
                    )

        return [slots[minute] for minute in sorted(slots)]
