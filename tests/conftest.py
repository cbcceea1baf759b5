import os
import uuid
from datetime import datetime, time, timezone

import pytest
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from scheduling_backend.database import Base, build_engine  # noqa: E402
from scheduling_backend.models.appointment import Appointment  # noqa: E402
from scheduling_backend.models.availability import TherapistAvailability, TherapistTimeOff  # noqa: E402
from scheduling_backend.models.therapist import Therapist  # noqa: E402
from scheduling_backend.models.user import User  # noqa: E402

# 2026-01-01 is a Thursday; 2026-01-05 is the following Monday.
NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

SCHEDULING_TABLES = [
    User.__table__,
    Therapist.__table__,
    TherapistAvailability.__table__,
    TherapistTimeOff.__table__,
    Appointment.__table__,
]


def create_scheduling_tables(engine) -> None:
    Base.metadata.create_all(bind=engine, tables=SCHEDULING_TABLES)


@pytest.fixture
def session_factory():
    engine = build_engine('sqlite:///:memory:')
    create_scheduling_tables(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine, tables=list(reversed(SCHEDULING_TABLES)))
        engine.dispose()


@pytest.fixture
def scheduling_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def add_therapist(db, **overrides) -> Therapist:
    values = {
        'first_name': 'Dana',
        'last_name': 'Rivera',
        'email': 'dana.rivera@example.com',
        'appointment_duration_minutes': 50,
        'buffer_time_minutes': 10,
    }
    values.update(overrides)
    therapist = Therapist(**values)
    db.add(therapist)
    db.commit()
    db.refresh(therapist)
    return therapist


def add_window(db, therapist_id: uuid.UUID, day_of_week: int, start: time, end: time,
               timezone_name: str = 'America/Los_Angeles', is_repeating: bool = True) -> TherapistAvailability:
    window = TherapistAvailability(
        therapist_id=therapist_id,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        timezone=timezone_name,
        is_repeating=is_repeating,
    )
    db.add(window)
    db.commit()
    db.refresh(window)
    return window


@pytest.fixture
def therapist(scheduling_db) -> Therapist:
    return add_therapist(scheduling_db)


@pytest.fixture
def monday_therapist(scheduling_db, therapist) -> Therapist:
    """Therapist with a single Monday 09:00-12:00 America/Los_Angeles window."""
    add_window(scheduling_db, therapist.id, 1, time(9, 0), time(12, 0))
    return therapist


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file database, so each thread gets its own connection."""
    engine = build_engine(f'sqlite:///{tmp_path / "scheduling.db"}')
    create_scheduling_tables(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield factory
    finally:
        engine.dispose()
