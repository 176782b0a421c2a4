import os
from datetime import date, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from petconsult.database import Base  # noqa: E402
from petconsult.models import appointment, availability, consultation, reservation  # noqa: E402,F401
from petconsult.models.professional import Professional  # noqa: E402
from petconsult.models.user import User  # noqa: E402
from petconsult.schemas import DayAvailability, PetDetails, TimeWindow, WeeklyAvailability  # noqa: E402
from petconsult.services.availability_store import set_weekly_template  # noqa: E402


def next_weekday(from_date: date, weekday: int) -> date:
    """First date strictly after ``from_date`` that falls on ``weekday``."""
    days_ahead = (weekday - from_date.weekday() - 1) % 7 + 1
    return from_date + timedelta(days=days_ahead)


def mornings_template(*weekdays: int) -> WeeklyAvailability:
    template = WeeklyAvailability()
    for weekday, name in enumerate(('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')):
        if weekday in weekdays:
            setattr(
                template,
                name,
                DayAvailability(is_available=True, windows=[TimeWindow(start_time=time(9, 0), end_time=time(10, 0))]),
            )
    return template


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f'sqlite:///{tmp_path / "petconsult.db"}',
        connect_args={'check_same_thread': False},
    )
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
def client_user(db) -> User:
    user = User(email='owner@example.com', name='Pet Owner', role='client')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_client(db) -> User:
    user = User(email='second@example.com', name='Second Owner', role='client')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db) -> User:
    user = User(email='admin@example.com', name='Admin', role='admin')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def professional_user(db) -> User:
    user = User(email='vet@example.com', name='Dr. Vet', role='professional')
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def professional(db, professional_user) -> Professional:
    """A vet offering 30 minute video and chat consultations, 09:00-10:00 every day."""
    professional = Professional(
        user_id=professional_user.id,
        name='Dr. Vet',
        profession='veterinarian',
        consultation_fee=Decimal('45.00'),
        currency='USD',
        consultation_modes=['video', 'chat'],
        appointment_duration_minutes=30,
        cancellation_lead_hours=2,
        is_active=True,
    )
    db.add(professional)
    db.commit()
    db.refresh(professional)

    set_weekly_template(db, professional.id, mornings_template(0, 1, 2, 3, 4, 5, 6))
    return professional


@pytest.fixture
def pet() -> PetDetails:
    return PetDetails(name='Biscuit', species='Dog', breed='Beagle', age=4, urgency_level='medium')


@pytest.fixture
def upcoming_monday() -> date:
    return next_weekday(date.today(), 0)
