"""Shared fixtures: a throwaway SQLite database per test and wired-up services."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from mentorbook.database import Base, SessionLocal, set_engine
from mentorbook.integrations.meeting_provider import FakeMeetingProvider
import mentorbook.models  # noqa: F401
from mentorbook.schemas.booking import BookingRequest
from mentorbook.services.booking_service import BookingService
from mentorbook.services.calendar_service import CalendarService
from mentorbook.services.entitlement_service import EntitlementService
from mentorbook.services.hold_service import HoldService

# A Monday well in the future so default hold TTLs never lapse mid-test
SESSION_START = datetime(2031, 3, 3, 10, 0, tzinfo=timezone.utc)

SUBJECT_ID = "contract_acme"
SERVICE_TYPE = "mentoring"
STUDENT_ID = "student_01"
MENTOR_ID = "mentor_01"


def build_sqlite_engine(url: str = "sqlite+pysqlite://") -> Engine:
    """Engine with the schema (CHECKs and overlap triggers) installed."""
    if url == "sqlite+pysqlite://":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    else:
        engine = create_engine(
            url, connect_args={"check_same_thread": False, "timeout": 30}, future=True
        )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = build_sqlite_engine()
    set_engine(engine)
    try:
        yield engine
    finally:
        set_engine(None)
        engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Iterator[Session]:
    session = SessionLocal(bind=engine)
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def meeting_provider() -> FakeMeetingProvider:
    return FakeMeetingProvider()


@pytest.fixture
def hold_service(db: Session) -> HoldService:
    return HoldService(db)


@pytest.fixture
def entitlement_service(db: Session, hold_service: HoldService) -> EntitlementService:
    return EntitlementService(db, hold_service=hold_service)


@pytest.fixture
def calendar_service(db: Session) -> CalendarService:
    return CalendarService(db)


@pytest.fixture
def booking_service(
    db: Session,
    meeting_provider: FakeMeetingProvider,
    entitlement_service: EntitlementService,
    hold_service: HoldService,
    calendar_service: CalendarService,
) -> BookingService:
    return BookingService(
        db,
        meeting_provider=meeting_provider,
        entitlement_service=entitlement_service,
        hold_service=hold_service,
        calendar_service=calendar_service,
        occupy_student_calendar=True,
    )


@pytest.fixture
def granted(entitlement_service: EntitlementService):
    """Grant units to the default subject; returns the grant helper for more."""

    def _grant(quantity: int = 10, subject_id: str = SUBJECT_ID, service_type: str = SERVICE_TYPE):
        return entitlement_service.grant_initial(subject_id, service_type, quantity)

    _grant()
    return _grant


def make_request(**overrides) -> BookingRequest:
    data = {
        "subject_id": SUBJECT_ID,
        "service_type": SERVICE_TYPE,
        "student_id": STUDENT_ID,
        "mentor_id": MENTOR_ID,
        "start_at": SESSION_START,
        "duration_minutes": 60,
        "topic": "Essay review",
    }
    data.update(overrides)
    return BookingRequest(**data)


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
