"""Store interfaces the scheduler depends on.

The production implementations live in ``sql_stores`` (SQLAlchemy). Every
method may suspend; all of them raise ``StoreUnavailable`` on timeouts or
lost connections.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple, Union

import pytz
from pydantic import ValidationError as PydanticValidationError

from tutoring_scheduler.core.exceptions import ValidationError
from tutoring_scheduler.schemas.availability import WeeklyAvailabilityTemplate
from tutoring_scheduler.schemas.booking import BookedSession, SessionStatus

ConflictPredicate = Callable[[BookedSession], bool]


@dataclass(frozen=True)
class Conflict:
    """Rejected conditional write"""

    reason: str
    conflicting_ids: List[str] = field(default_factory=list)


CommitResult = Union[BookedSession, Conflict]


class TemplateStore(Protocol):
    async def list_templates(self, tutor_id: str) -> List[WeeklyAvailabilityTemplate]:
        ...


class SessionStore(Protocol):
    async def list_sessions_on_date(self, tutor_id: str, on_date: date, tz_name: str) -> List[BookedSession]:
        """Blocking sessions of the tutor overlapping the local calendar day"""
        ...

    async def list_student_sessions_between(
        self, student_id: str, start: datetime, end: datetime
    ) -> List[BookedSession]:
        """Blocking sessions of the student overlapping [start, end)"""
        ...

    async def list_sessions_for_student(
        self, student_id: str, status: Optional[SessionStatus] = None
    ) -> List[BookedSession]:
        """Every session of the student, cancelled ones included unless ``status`` narrows it, by start"""
        ...

    async def list_sessions_for_tutor(
        self, tutor_id: str, status: Optional[SessionStatus] = None
    ) -> List[BookedSession]:
        ...

    async def get_session(self, session_id: str) -> Optional[BookedSession]:
        ...

    async def try_commit(self, candidate: BookedSession, conflict_predicate: ConflictPredicate) -> CommitResult:
        """Atomically persist ``candidate`` as CONFIRMED.

        ``conflict_predicate`` is evaluated against the tutor's blocking sessions
        inside the same atomic step; any match rejects the write.
        """
        ...

    async def try_cancel(self, session: BookedSession, reason: str) -> CommitResult:
        """Mark ``session`` CANCELLED if its stored version still matches"""
        ...


class CourseTutorStore(Protocol):
    async def list_tutor_ids(self, course_id: str) -> List[str]:
        ...


def local_day_bounds(on_date: date, tz_name: str) -> Tuple[datetime, datetime]:
    """UTC bounds of the calendar day ``on_date`` in ``tz_name``"""
    tz = pytz.timezone(tz_name)
    start = tz.localize(datetime.combine(on_date, time.min))
    end = tz.localize(datetime.combine(on_date + timedelta(days=1), time.min))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def check_new_template(
    existing: List[WeeklyAvailabilityTemplate], template: WeeklyAvailabilityTemplate
) -> None:
    """Enforce one timezone per tutor and non-overlapping windows per day"""
    for other in existing:
        if other.timezone != template.timezone:
            raise ValidationError(
                f"Tutor {template.tutor_id} already uses timezone {other.timezone}, got {template.timezone}"
            )
        if other.overlaps(template):
            raise ValidationError(f"Availability {template} overlaps existing window {other}")


def build_template(**values) -> WeeklyAvailabilityTemplate:
    try:
        return WeeklyAvailabilityTemplate(**values)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid availability template: {e}") from e
