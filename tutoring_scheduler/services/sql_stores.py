import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from tutoring_scheduler.core.exceptions import StoreUnavailable
from tutoring_scheduler.core.retry import call_with_deadline
from tutoring_scheduler.models.availability import AvailabilityTemplate, TutorScheduleVersion
from tutoring_scheduler.models.booking import TutoringSession
from tutoring_scheduler.models.course import CourseTutor
from tutoring_scheduler.schemas.availability import WeeklyAvailabilityTemplate
from tutoring_scheduler.schemas.booking import BLOCKING_STATUSES, BookedSession, SessionStatus
from tutoring_scheduler.services.stores import (
    CommitResult,
    Conflict,
    ConflictPredicate,
    build_template,
    check_new_template,
    local_day_bounds,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Sessions further than this from a candidate are never handed to a conflict predicate
PREDICATE_LOOKAROUND = timedelta(days=1)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_template(row: AvailabilityTemplate) -> WeeklyAvailabilityTemplate:
    return WeeklyAvailabilityTemplate(
        id=row.id,
        tutor_id=row.tutor_id,
        day_of_week=row.day_of_week,
        start_time=row.start_time,
        end_time=row.end_time,
        timezone=row.timezone,
        is_available=row.is_available,
        recurrence_end_date=row.recurrence_end_date,
    )


def _to_session(row: TutoringSession) -> BookedSession:
    return BookedSession(
        id=row.id,
        tutor_id=row.tutor_id,
        student_id=row.student_id,
        course_id=row.course_id,
        scheduled_start=_as_utc(row.scheduled_start),
        scheduled_end=_as_utc(row.scheduled_end),
        status=row.status,
        version=row.version,
        cancel_reason=row.cancel_reason,
    )


class _Abort(Exception):
    """Roll back the current transaction and hand ``outcome`` to the caller"""

    def __init__(self, outcome):
        super().__init__()
        self.outcome = outcome


_VERSION_MOVED = object()


class SqlStore:
    """Shared plumbing: one AsyncSession per call, bounded by a timeout"""

    def __init__(self, session_factory: async_sessionmaker, timeout_seconds: float = 5.0):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    async def _run(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call_with_deadline(operation, self.timeout_seconds, description)
        except (OperationalError, InterfaceError) as e:
            logger.warning(f"{description} failed: {e}")
            raise StoreUnavailable(f"{description} failed: {e.orig or e}") from e


class SqlTemplateStore(SqlStore):
    def __init__(self, session_factory: async_sessionmaker, default_timezone: str = "UTC", timeout_seconds: float = 5.0):
        super().__init__(session_factory, timeout_seconds)
        self.default_timezone = default_timezone

    async def list_templates(self, tutor_id: str) -> List[WeeklyAvailabilityTemplate]:
        async def operation():
            async with self.session_factory() as session:
                result = await session.execute(
                    select(AvailabilityTemplate)
                    .where(AvailabilityTemplate.tutor_id == tutor_id)
                    .order_by(AvailabilityTemplate.day_of_week, AvailabilityTemplate.start_time)
                )
                return [_to_template(row) for row in result.scalars().all()]

        return await self._run(f"list templates for tutor {tutor_id}", operation)

    async def add_template(
        self,
        tutor_id: str,
        day_of_week: int,
        start_time: time,
        end_time: time,
        tz_name: Optional[str] = None,
        is_available: bool = True,
        recurrence_end_date: Optional[date] = None,
    ) -> WeeklyAvailabilityTemplate:
        """Create a weekly window, rejecting overlaps with the tutor's other windows"""
        template = build_template(
            id=str(uuid.uuid4()),
            tutor_id=tutor_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            timezone=tz_name or self.default_timezone,
            is_available=is_available,
            recurrence_end_date=recurrence_end_date,
        )

        async def operation():
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(AvailabilityTemplate).where(AvailabilityTemplate.tutor_id == tutor_id)
                    )
                    check_new_template([_to_template(row) for row in result.scalars().all()], template)
                    session.add(
                        AvailabilityTemplate(
                            id=template.id,
                            tutor_id=template.tutor_id,
                            day_of_week=template.day_of_week,
                            start_time=template.start_time,
                            end_time=template.end_time,
                            timezone=template.timezone,
                            is_available=template.is_available,
                            recurrence_end_date=template.recurrence_end_date,
                        )
                    )
            return template

        created = await self._run(f"add template for tutor {tutor_id}", operation)
        logger.info(f"Added availability {created} for tutor {tutor_id}")
        return created


class SqlCourseTutorStore(SqlStore):
    async def list_tutor_ids(self, course_id: str) -> List[str]:
        async def operation():
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CourseTutor.tutor_id).where(CourseTutor.course_id == course_id).order_by(CourseTutor.tutor_id)
                )
                return list(result.scalars().all())

        return await self._run(f"list tutors for course {course_id}", operation)

    async def assign_tutor(self, course_id: str, tutor_id: str) -> None:
        async def operation():
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await session.execute(
                        select(CourseTutor).where(
                            and_(CourseTutor.course_id == course_id, CourseTutor.tutor_id == tutor_id)
                        )
                    )
                    if existing.scalar_one_or_none() is None:
                        session.add(CourseTutor(course_id=course_id, tutor_id=tutor_id))

        await self._run(f"assign tutor {tutor_id} to course {course_id}", operation)


class SqlSessionStore(SqlStore):
    """Session persistence with a per-tutor compare-and-swap commit"""

    def __init__(self, session_factory: async_sessionmaker, timeout_seconds: float = 5.0, cas_attempts: int = 5):
        super().__init__(session_factory, timeout_seconds)
        self.cas_attempts = cas_attempts

    async def _select_sessions(self, *criteria, blocking_only: bool = True) -> List[BookedSession]:
        if blocking_only:
            criteria = (TutoringSession.status.in_(list(BLOCKING_STATUSES)),) + criteria
        async with self.session_factory() as session:
            result = await session.execute(
                select(TutoringSession).where(and_(*criteria)).order_by(TutoringSession.scheduled_start)
            )
            return [_to_session(row) for row in result.scalars().all()]

    async def list_sessions_on_date(self, tutor_id: str, on_date: date, tz_name: str) -> List[BookedSession]:
        day_start, day_end = local_day_bounds(on_date, tz_name)
        return await self._run(
            f"list sessions for tutor {tutor_id} on {on_date}",
            lambda: self._select_sessions(
                TutoringSession.tutor_id == tutor_id,
                TutoringSession.scheduled_start < day_end,
                TutoringSession.scheduled_end > day_start,
            ),
        )

    async def list_student_sessions_between(
        self, student_id: str, start: datetime, end: datetime
    ) -> List[BookedSession]:
        return await self._run(
            f"list sessions for student {student_id}",
            lambda: self._select_sessions(
                TutoringSession.student_id == student_id,
                TutoringSession.scheduled_start < _as_utc(end),
                TutoringSession.scheduled_end > _as_utc(start),
            ),
        )

    async def list_sessions_for_student(
        self, student_id: str, status: Optional[SessionStatus] = None
    ) -> List[BookedSession]:
        criteria = [TutoringSession.student_id == student_id]
        if status is not None:
            criteria.append(TutoringSession.status == status)
        return await self._run(
            f"list all sessions for student {student_id}",
            lambda: self._select_sessions(*criteria, blocking_only=False),
        )

    async def list_sessions_for_tutor(
        self, tutor_id: str, status: Optional[SessionStatus] = None
    ) -> List[BookedSession]:
        criteria = [TutoringSession.tutor_id == tutor_id]
        if status is not None:
            criteria.append(TutoringSession.status == status)
        return await self._run(
            f"list all sessions for tutor {tutor_id}",
            lambda: self._select_sessions(*criteria, blocking_only=False),
        )

    async def get_session(self, session_id: str) -> Optional[BookedSession]:
        async def operation():
            async with self.session_factory() as session:
                row = await session.get(TutoringSession, session_id)
                return _to_session(row) if row is not None else None

        return await self._run(f"get session {session_id}", operation)

    async def _read_version(self, tutor_id: str) -> int:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        select(TutorScheduleVersion.version).where(TutorScheduleVersion.tutor_id == tutor_id)
                    )
                    version = result.scalar_one_or_none()
                    if version is None:
                        session.add(TutorScheduleVersion(tutor_id=tutor_id, version=0))
                        version = 0
            except IntegrityError:
                # Another writer created the ledger row first; the CAS will sort it out
                version = 0
        return version

    async def _commit_once(
        self, candidate: BookedSession, conflict_predicate: ConflictPredicate, expected_version: int
    ):
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    # First statement is the write, so the row lock is taken up front
                    bumped = await session.execute(
                        update(TutorScheduleVersion)
                        .where(
                            and_(
                                TutorScheduleVersion.tutor_id == candidate.tutor_id,
                                TutorScheduleVersion.version == expected_version,
                            )
                        )
                        .values(version=expected_version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if bumped.rowcount != 1:
                        raise _Abort(_VERSION_MOVED)

                    result = await session.execute(
                        select(TutoringSession).where(
                            and_(
                                TutoringSession.tutor_id == candidate.tutor_id,
                                TutoringSession.status.in_(list(BLOCKING_STATUSES)),
                                TutoringSession.scheduled_start < candidate.scheduled_end + PREDICATE_LOOKAROUND,
                                TutoringSession.scheduled_end > candidate.scheduled_start - PREDICATE_LOOKAROUND,
                            )
                        )
                    )
                    conflicting = [
                        existing.id
                        for existing in (_to_session(row) for row in result.scalars().all())
                        if conflict_predicate(existing)
                    ]
                    if conflicting:
                        raise _Abort(Conflict("Tutor is not available at the requested time", conflicting))

                    confirmed = candidate.model_copy(update={"status": SessionStatus.CONFIRMED, "version": 1})
                    session.add(
                        TutoringSession(
                            id=confirmed.id,
                            tutor_id=confirmed.tutor_id,
                            student_id=confirmed.student_id,
                            course_id=confirmed.course_id,
                            scheduled_start=confirmed.scheduled_start,
                            scheduled_end=confirmed.scheduled_end,
                            status=confirmed.status,
                            version=confirmed.version,
                        )
                    )
            except _Abort as abort:
                return abort.outcome
            except IntegrityError as e:
                logger.info(f"Commit for tutor {candidate.tutor_id} rejected by unique index: {e.orig}")
                return Conflict("Another session already starts at this time")
        return confirmed

    async def try_commit(self, candidate: BookedSession, conflict_predicate: ConflictPredicate) -> CommitResult:
        for attempt in range(1, self.cas_attempts + 1):
            expected = await self._run(
                f"read schedule version for tutor {candidate.tutor_id}",
                lambda: self._read_version(candidate.tutor_id),
            )
            outcome = await self._run(
                f"commit session for tutor {candidate.tutor_id}",
                lambda: self._commit_once(candidate, conflict_predicate, expected),
            )
            if outcome is not _VERSION_MOVED:
                return outcome
            logger.info(
                f"Schedule of tutor {candidate.tutor_id} moved past version {expected} "
                f"(attempt {attempt}/{self.cas_attempts}), re-checking"
            )

        raise StoreUnavailable(
            f"Schedule of tutor {candidate.tutor_id} kept changing during {self.cas_attempts} commit attempts"
        )

    async def try_cancel(self, session: BookedSession, reason: str) -> CommitResult:
        async def operation():
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        update(TutoringSession)
                        .where(
                            and_(
                                TutoringSession.id == session.id,
                                TutoringSession.version == session.version,
                                TutoringSession.status == SessionStatus.CONFIRMED,
                            )
                        )
                        .values(
                            status=SessionStatus.CANCELLED,
                            version=TutoringSession.version + 1,
                            cancel_reason=reason,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    changed = result.rowcount
            if changed != 1:
                return Conflict("Session changed since it was read", [session.id])
            return session.model_copy(
                update={
                    "status": SessionStatus.CANCELLED,
                    "version": session.version + 1,
                    "cancel_reason": reason,
                }
            )

        return await self._run(f"cancel session {session.id}", operation)
