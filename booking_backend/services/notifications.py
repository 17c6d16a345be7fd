"""Fire-and-forget notification dispatch.

Booking code pushes events through a ``NotificationDispatcher``. Delivery
failures are logged and dropped; they never reach the caller.
"""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from threading import Lock
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from booking_backend.core import config
from booking_backend.database import SessionLocal
from booking_backend.models.notification import Notification

logger = logging.getLogger(__name__)

NEW_APPOINTMENT = 'NEW_APPOINTMENT'
APPOINTMENT_CONFIRMATION = 'APPOINTMENT_CONFIRMATION'
APPOINTMENT_CANCELLATION = 'APPOINTMENT_CANCELLATION'
APPOINTMENT_REMINDER = 'APPOINTMENT_REMINDER'
GENERAL = 'GENERAL'


class NotificationSink(Protocol):
    def push(self, user_id: int, notification_type: str, title: str, message: str) -> None:
        ...


class DatabaseNotificationSink:
    """Stores notifications as unread rows, using a session of its own."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def push(self, user_id: int, notification_type: str, title: str, message: str) -> None:
        db = self.session_factory()
        try:
            db.add(
                Notification(
                    user_id=user_id,
                    type=notification_type,
                    title=title,
                    message=message,
                    is_read=False,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class NotificationDispatcher:
    def __init__(self, sink: NotificationSink, executor: Executor | None = None):
        self.sink = sink
        self.executor = executor

    def push(self, user_id: int, notification_type: str, title: str, message: str) -> None:
        if self.executor is None:
            self._deliver(user_id, notification_type, title, message)
            return

        try:
            self.executor.submit(self._deliver, user_id, notification_type, title, message)
        except RuntimeError:
            logger.exception('Notification executor rejected %s for user %s.', notification_type, user_id)

    def _deliver(self, user_id: int, notification_type: str, title: str, message: str) -> None:
        try:
            self.sink.push(user_id, notification_type, title, message)
        except Exception:
            logger.exception('Failed to deliver %s notification to user %s.', notification_type, user_id)

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)


_dispatcher_lock = Lock()
_dispatcher: NotificationDispatcher | None = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher

    if _dispatcher is not None:
        return _dispatcher

    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = NotificationDispatcher(
                DatabaseNotificationSink(),
                ThreadPoolExecutor(max_workers=config.NOTIFICATION_WORKERS, thread_name_prefix='notifications'),
            )
        return _dispatcher


def shutdown_notification_dispatcher() -> None:
    global _dispatcher

    with _dispatcher_lock:
        if _dispatcher is not None:
            _dispatcher.shutdown()
            _dispatcher = None
