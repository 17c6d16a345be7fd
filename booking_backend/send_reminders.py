"""Push reminders for confirmed appointments in the next day.

Usage:
    python -m booking_backend.send_reminders
"""
import sys

from booking_backend.core.errors import PersistenceError
from booking_backend.database import SessionLocal
from booking_backend.services.notifications import DatabaseNotificationSink, NotificationDispatcher
from booking_backend.services.reminders import send_appointment_reminders


def main() -> None:
    db = SessionLocal()
    try:
        count = send_appointment_reminders(db, NotificationDispatcher(DatabaseNotificationSink()))
    except PersistenceError as exc:
        print(f"Reminder sweep failed: {exc.message}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()
    print(f"Sent {count} appointment reminders.")


if __name__ == "__main__":
    main()
