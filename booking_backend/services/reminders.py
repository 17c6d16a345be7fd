"""Reminder sweep for upcoming confirmed appointments. Meant to run from cron."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.database import translate_persistence_errors
from booking_backend.models.appointment import STATUS_CONFIRMED, Appointment
from booking_backend.services import notifications
from booking_backend.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


def send_appointment_reminders(
    db: Session,
    dispatcher: NotificationDispatcher,
    now: datetime | None = None,
    lookahead_hours: int = config.REMINDER_LOOKAHEAD_HOURS,
) -> int:
    now = now or datetime.now()
    horizon = now + timedelta(hours=lookahead_hours)

    with translate_persistence_errors(db, 'loading upcoming appointments'):
        upcoming = db.query(Appointment).filter(
            Appointment.status == STATUS_CONFIRMED,
            Appointment.scheduled_at >= now,
            Appointment.scheduled_at <= horizon,
        ).order_by(Appointment.scheduled_at.asc()).all()

    for appointment in upcoming:
        dispatcher.push(
            appointment.patient_id,
            notifications.APPOINTMENT_REMINDER,
            'Appointment Reminder',
            f'You have an appointment on {appointment.scheduled_at:%Y-%m-%d} at '
            f'{appointment.scheduled_at:%H:%M}. Please be on time.',
        )

    logger.info('Sent %d appointment reminders.', len(upcoming))
    return len(upcoming)
