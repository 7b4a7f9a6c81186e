import os
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.core.clock import CLINIC_TZ, FixedClock  # noqa: E402
from backend.database import Base  # noqa: E402
from backend.models.appointment import Appointment  # noqa: E402
from backend.models.availability import WeeklyAvailability  # noqa: E402
from backend.models.user import DOCTOR_ROLE, PATIENT_ROLE, User  # noqa: E402
from backend.services.notifications import Notifier  # noqa: E402

MONDAY = 1


def clinic_time(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=CLINIC_TZ)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, int, int]] = []
        self.fail = fail

    def send(self, kind, appointment, recipient_id) -> None:
        if self.fail:
            raise RuntimeError('mail server down')
        self.sent.append((kind, appointment.id, recipient_id))


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=[User.__table__, WeeklyAvailability.__table__, Appointment.__table__])
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine, tables=[Appointment.__table__, WeeklyAvailability.__table__, User.__table__])
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def doctor(db) -> User:
    user = User(
        email='house@clinic.example',
        hashed_password='',
        role=DOCTOR_ROLE,
        first_name='Gregory',
        last_name='House',
        consultation_fee=500,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db) -> User:
    user = User(
        email='patient@example.com',
        hashed_password='',
        role=PATIENT_ROLE,
        first_name='Pat',
        last_name='Ient',
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def monday_morning(db, doctor) -> WeeklyAvailability:
    window = WeeklyAvailability(
        doctor_id=doctor.id,
        day_of_week=MONDAY,
        start_time='09:00',
        end_time='11:00',
        is_active=True,
    )
    db.add(window)
    db.commit()
    db.refresh(window)
    return window


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FixedClock:
    # Sunday 4 January 2026, 08:00 clinic time.
    return FixedClock(clinic_time(2026, 1, 4, 8, 0))


@pytest.fixture
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    for module in (
        'backend.routes.availability_routes',
        'backend.routes.appointment_routes',
        'backend.routes.payment_routes',
        'backend.routes.cron_routes',
    ):
        monkeypatch.setattr(f'{module}.ensure_database_ready', lambda: None)


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)
