import logging
import time
from contextlib import contextmanager
from datetime import date
from threading import Lock
from typing import Iterable, Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from booking_backend.core import config
from booking_backend.core.errors import BookingError, PersistenceError

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith('sqlite'):
        connect_args['check_same_thread'] = False
        connect_args['timeout'] = config.PERSISTENCE_TIMEOUT_SECONDS
    return create_engine(database_url, echo=config.DATABASE_ECHO, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked = False


def ensure_booking_schema() -> None:
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)
        table_names = inspector.get_table_names()

        with engine.begin() as connection:
            if 'appointments' in table_names:
                existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
                migration_steps = [
                    ('symptoms', 'ALTER TABLE appointments ADD COLUMN symptoms VARCHAR'),
                    ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
                    ('cancel_reason', 'ALTER TABLE appointments ADD COLUMN cancel_reason VARCHAR'),
                    ('updated_at', 'ALTER TABLE appointments ADD COLUMN updated_at TIMESTAMP'),
                ]
                for column_name, statement in migration_steps:
                    if column_name not in existing_columns:
                        connection.execute(text(statement))
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS idx_appointments_doctor_start '
                        'ON appointments(doctor_id, scheduled_at)'
                    )
                )
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_appointments_status_start ON appointments(status, scheduled_at)')
                )

            if 'doctor_schedules' in table_names:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_doctor_schedules_weekday ON doctor_schedules(doctor_id, weekday)')
                )

        _booking_schema_checked = True


class KeyedLockRegistry:
    """Process-local mutexes created on demand per key and dropped once unused."""

    def __init__(self):
        self._guard = Lock()
        self._locks: dict[tuple, list] = {}

    def _checkout(self, key: tuple) -> Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: tuple) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, keys: Iterable[tuple], timeout: float) -> Iterator[None]:
        # Sorted acquisition keeps two holders of overlapping key sets from deadlocking.
        deadline = time.monotonic() + timeout
        held: list[tuple[tuple, Lock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                if not lock.acquire(timeout=max(0.0, deadline - time.monotonic())):
                    self._checkin(key)
                    raise PersistenceError('Timed out waiting for a booking lock.')
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)


booking_locks = KeyedLockRegistry()


def is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == 'postgresql'


def apply_statement_timeout(db: Session, timeout_seconds: float) -> None:
    if is_postgres(db):
        db.execute(text(f'SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}'))


@contextmanager
def translate_persistence_errors(db: Session, action: str) -> Iterator[None]:
    """Roll back on any failure and surface storage errors as ``PersistenceError``."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Database failure while %s.', action)
        raise PersistenceError(f'Database unavailable while {action}.') from exc
    except BookingError:
        db.rollback()
        raise


@contextmanager
def doctor_day_lock(db: Session, doctor_id: int, days: Iterable[date], timeout_seconds: float) -> Iterator[None]:
    """Serialize writers touching the same doctor's days.

    Held for the whole check-then-insert sequence. On PostgreSQL an advisory
    transaction lock per day extends the guarantee across processes; it is
    released by the commit or rollback that ends the transaction.
    """
    days = sorted(set(days))
    with booking_locks.hold((('booking', doctor_id, day) for day in days), timeout_seconds):
        if is_postgres(db):
            apply_statement_timeout(db, timeout_seconds)
            for day in days:
                db.execute(
                    text('SELECT pg_advisory_xact_lock(:doctor_id, :day)'),
                    {'doctor_id': doctor_id, 'day': day.toordinal()},
                )
        yield


@contextmanager
def doctor_schedule_lock(db: Session, doctor_id: int, timeout_seconds: float) -> Iterator[None]:
    with booking_locks.hold([('schedule', doctor_id)], timeout_seconds):
        if is_postgres(db):
            apply_statement_timeout(db, timeout_seconds)
            db.execute(
                text('SELECT pg_advisory_xact_lock(:namespace, :doctor_id)'),
                {'namespace': 0, 'doctor_id': doctor_id},
            )
        yield
