import os
from datetime import datetime
from itertools import count

import pytest
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from booking_backend.database import Base, build_engine  # noqa: E402
from booking_backend.models import appointment, notification, rate_limit, schedule  # noqa: E402,F401
from booking_backend.models.user import User  # noqa: E402
from booking_backend.services.availability_store import AvailabilityStore, ScheduleWindow  # noqa: E402


# 2030-01-01 is a Tuesday, so 2030-01-07 is a Monday.
FIXED_NOW = datetime(2030, 1, 1, 8, 0)
MONDAY = 1


class RecordingSink:
    def __init__(self):
        self.events = []

    def push(self, user_id, notification_type, title, message):
        self.events.append((user_id, notification_type, title, message))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f'sqlite:///{tmp_path / "booking.db"}')
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    sequence = count(1)

    def _make_user(role: str) -> User:
        number = next(sequence)
        user = User(
            email=f'{role}{number}@example.com',
            name=f'{role.title()} {number}',
            hashed_password='',
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def doctor(make_user):
    return make_user('doctor')


@pytest.fixture
def patient(make_user):
    return make_user('patient')


@pytest.fixture
def admin(make_user):
    return make_user('admin')


@pytest.fixture
def monday_morning(db, doctor):
    """Doctor available Monday 09:00-10:00, one appointment per slot."""
    AvailabilityStore(db).replace_schedule(
        doctor.id,
        [ScheduleWindow(weekday=MONDAY, start_minute=9 * 60, end_minute=10 * 60)],
    )
    return doctor


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def client(session_factory, sink, monkeypatch: pytest.MonkeyPatch):
    from fastapi.testclient import TestClient

    from booking_backend.auth.dependencies import get_db
    from booking_backend.main import app
    from booking_backend.routes.common import get_dispatcher
    from booking_backend.services.notifications import NotificationDispatcher
    from booking_backend.services.rate_limiter import InMemoryRateLimiter

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr('booking_backend.routes.schedule_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('booking_backend.routes.appointment_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('booking_backend.services.rate_limiter._rate_limiter', InMemoryRateLimiter())

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: NotificationDispatcher(sink)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    from booking_backend.auth.jwt_handler import create_access_token

    def _auth_headers(user: User) -> dict:
        return {'Authorization': f'Bearer {create_access_token(user.id, user.role)}'}

    return _auth_headers
