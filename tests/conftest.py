"""Shared test fixtures for the tutoring scheduler tests."""

import asyncio
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

import pytest

from memory_stores import InMemoryCourseTutorStore, InMemorySessionStore, InMemoryTemplateStore
from tutoring_scheduler.core.config import Settings
from tutoring_scheduler.core.exceptions import StoreUnavailable
from tutoring_scheduler.schemas.availability import ConcreteTimeWindow
from tutoring_scheduler.schemas.booking import BookedSession, SessionStatus
from tutoring_scheduler.services.booking_coordinator import BookingCoordinator
from tutoring_scheduler.services.scheduling_service import SchedulingService

# Friday noon UTC
NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
FRIDAY = date(2026, 10, 16)
MONDAY = date(2026, 10, 19)
SATURDAY = date(2026, 10, 24)

COURSE_ID = "math-101"
TUTOR_ID = "tutor-1"
STUDENT_ID = "student-1"


def at(hour: int, minute: int = 0, on_date: date = MONDAY) -> datetime:
    """UTC timestamp on a test date"""
    return datetime.combine(on_date, time(hour, minute), tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyStore:
    """Wraps a store and raises StoreUnavailable on the first ``failures`` calls.

    Only the methods named in ``methods`` fail; all of them fail when it is None.
    """

    def __init__(self, inner, failures: int, methods: Optional[Iterable[str]] = None):
        self.inner = inner
        self.failures = failures
        self.methods = set(methods) if methods is not None else None
        self.calls = {}

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr) or (self.methods is not None and name not in self.methods):
            return attr

        async def wrapper(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            if self.failures > 0:
                self.failures -= 1
                raise StoreUnavailable(f"injected failure in {name}")
            return await attr(*args, **kwargs)

        return wrapper


class HangingStore:
    """Wraps a store so the named methods never return"""

    def __init__(self, inner, methods: Iterable[str]):
        self.inner = inner
        self.methods = set(methods)
        self.calls = {}

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if name not in self.methods:
            return attr

        async def wrapper(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            await asyncio.sleep(3600)

        return wrapper


@pytest.fixture
def settings() -> Settings:
    """Deterministic settings: UTC institution, 30-minute grid, no retry delay."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        INSTITUTION_TIMEZONE="UTC",
        MAX_ADVANCE_MONTHS=3,
        MIN_ADVANCE_MINUTES=60,
        ALLOWED_DURATIONS=[30, 60, 90, 120],
        SLOT_GRANULARITY_MINUTES=30,
        BUFFER_MINUTES=0,
        ALLOW_STUDENT_CONFLICTS=False,
        STORE_RETRY_ATTEMPTS=3,
        STORE_RETRY_BASE_DELAY=0.0,
        STORE_RETRY_MAX_DELAY=0.0,
    )


@pytest.fixture
def short_timeout_settings(settings) -> Settings:
    """Like ``settings`` but every store call gives up after 50ms."""
    return settings.model_copy(update={"STORE_TIMEOUT_SECONDS": 0.05})


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def template_store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore(default_timezone="UTC")


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def course_tutor_store() -> InMemoryCourseTutorStore:
    return InMemoryCourseTutorStore()


@pytest.fixture
async def math_course(template_store, course_tutor_store):
    """tutor-1 teaches math-101 on Mondays 09:00-12:00 and Fridays 09:00-17:00 (UTC)."""
    await course_tutor_store.assign_tutor(COURSE_ID, TUTOR_ID)
    await template_store.add_template(TUTOR_ID, 0, time(9, 0), time(12, 0))
    await template_store.add_template(TUTOR_ID, 4, time(9, 0), time(17, 0))
    return COURSE_ID


@pytest.fixture
def scheduling_service(template_store, session_store, course_tutor_store, settings, clock) -> SchedulingService:
    return SchedulingService(template_store, session_store, course_tutor_store, settings, clock=clock)


@pytest.fixture
def coordinator(template_store, session_store, course_tutor_store, settings, clock) -> BookingCoordinator:
    return BookingCoordinator(template_store, session_store, course_tutor_store, settings, clock=clock)


@pytest.fixture
def make_session():
    """Factory for BookedSession values."""

    def factory(
        start: datetime,
        end: datetime,
        status: SessionStatus = SessionStatus.CONFIRMED,
        tutor_id: str = TUTOR_ID,
        student_id: str = STUDENT_ID,
        course_id: str = COURSE_ID,
        session_id: Optional[str] = None,
    ) -> BookedSession:
        return BookedSession(
            id=session_id or str(uuid.uuid4()),
            tutor_id=tutor_id,
            student_id=student_id,
            course_id=course_id,
            scheduled_start=start,
            scheduled_end=end,
            status=status,
            version=1,
        )

    return factory


@pytest.fixture
def make_window():
    """Factory for ConcreteTimeWindow values on MONDAY."""

    def factory(start: datetime, end: datetime, tutor_id: str = TUTOR_ID) -> ConcreteTimeWindow:
        return ConcreteTimeWindow(start=start, end=end, tutor_id=tutor_id, on_date=start.date())

    return factory


@pytest.fixture
def seed_session(session_store, make_session):
    """Persist a confirmed session directly through the store's commit path."""

    async def seed(start: datetime, end: datetime, **kwargs) -> BookedSession:
        return await session_store.try_commit(make_session(start, end, **kwargs), lambda existing: False)

    return seed
