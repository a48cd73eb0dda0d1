import asyncio
import logging
from datetime import date, datetime
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from tutoring_scheduler.core.config import Settings
from tutoring_scheduler.core.exceptions import NotFoundError, ValidationError
from tutoring_scheduler.core.retry import read_with_retry
from tutoring_scheduler.schemas.availability import AvailabilityQuery, AvailableSlotResult
from tutoring_scheduler.schemas.booking import BookedSession, SessionListing, SessionStatus
from tutoring_scheduler.services.availability_index import AvailabilityIndex
from tutoring_scheduler.services.conflict_resolver import ConflictResolver
from tutoring_scheduler.services.policy import earliest_bookable_start, validate_duration
from tutoring_scheduler.services.slot_generator import candidate_starts
from tutoring_scheduler.services.stores import CourseTutorStore, SessionStore, TemplateStore

logger = logging.getLogger(__name__)


class SchedulingService:
    """Read side of the scheduler: slot search and session lookups.

    Search answers which tutors of a course can take a session on a date.
    Results are advisory. Nothing is cached between calls, so two searches with
    no store mutation in between return the same slots.
    """

    def __init__(
        self,
        template_store: TemplateStore,
        session_store: SessionStore,
        course_tutor_store: CourseTutorStore,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_store = session_store
        self.course_tutor_store = course_tutor_store
        self.settings = settings
        self.availability_index = AvailabilityIndex(template_store, settings, clock)
        self.conflict_resolver = ConflictResolver(settings.BUFFER_MINUTES)

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.availability_index.clock

    async def search(
        self,
        course_id: str,
        on_date: date,
        duration_minutes: int,
        tutor_id: Optional[str] = None,
    ) -> List[AvailableSlotResult]:
        """Bookable slots per tutor window, ordered by window start then tutor"""
        try:
            query = AvailabilityQuery(
                course_id=course_id, on_date=on_date, duration_minutes=duration_minutes, tutor_id=tutor_id
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid availability query: {e}") from e

        validate_duration(query.duration_minutes, self.settings)
        self.availability_index.validate_date(query.on_date)

        tutor_ids = await read_with_retry(
            lambda: self.course_tutor_store.list_tutor_ids(query.course_id),
            self.settings,
            f"list tutors for course {query.course_id}",
        )
        if query.tutor_id is not None:
            if query.tutor_id not in tutor_ids:
                logger.info(f"Tutor {query.tutor_id} is not associated with course {query.course_id}")
                return []
            tutor_ids = [query.tutor_id]

        if not tutor_ids:
            logger.info(f"No tutors associated with course {query.course_id}")
            return []

        earliest = earliest_bookable_start(self.clock(), self.settings)
        per_tutor = await asyncio.gather(
            *(self._search_tutor(t, query.on_date, query.duration_minutes, earliest) for t in tutor_ids)
        )

        results = sorted(
            (result for tutor_results in per_tutor for result in tutor_results),
            key=lambda r: (r.window.start, r.tutor_id),
        )
        logger.info(
            f"Search course={query.course_id} date={query.on_date} duration={query.duration_minutes}: "
            f"{len(results)} window(s) across {len(tutor_ids)} tutor(s)"
        )
        return results

    async def _search_tutor(
        self, tutor_id: str, on_date: date, duration_minutes: int, earliest: datetime
    ) -> List[AvailableSlotResult]:
        windows = await self.availability_index.windows_for(tutor_id, on_date)
        if not windows:
            return []

        sessions = await read_with_retry(
            lambda: self.session_store.list_sessions_on_date(tutor_id, on_date, windows[0].timezone),
            self.settings,
            f"list sessions for tutor {tutor_id} on {on_date}",
        )
        free = self.conflict_resolver.free_intervals(windows, sessions)

        results = []
        for window in windows:
            starts = candidate_starts(
                [interval for interval in free if interval.window is window],
                duration_minutes,
                self.settings.SLOT_GRANULARITY_MINUTES,
            )
            starts = [start for start in starts if start >= earliest]
            if starts:
                results.append(AvailableSlotResult(tutor_id=tutor_id, window=window, candidate_start_times=starts))
        return results

    async def student_sessions(
        self, student_id: str, status: Optional[SessionStatus] = None, limit: Optional[int] = None
    ) -> SessionListing:
        """A student's sessions in every status unless ``status`` narrows them"""
        self._require_id("Student ID", student_id)
        sessions = await read_with_retry(
            lambda: self.session_store.list_sessions_for_student(student_id, status),
            self.settings,
            f"list all sessions for student {student_id}",
        )
        return self._split(sessions, limit)

    async def tutor_sessions(
        self, tutor_id: str, status: Optional[SessionStatus] = None, limit: Optional[int] = None
    ) -> SessionListing:
        self._require_id("Tutor ID", tutor_id)
        sessions = await read_with_retry(
            lambda: self.session_store.list_sessions_for_tutor(tutor_id, status),
            self.settings,
            f"list all sessions for tutor {tutor_id}",
        )
        return self._split(sessions, limit)

    async def session_details(self, session_id: str, user_id: str) -> BookedSession:
        """One session, visible only to its student and its tutor"""
        self._require_id("User ID", user_id)
        session = await read_with_retry(
            lambda: self.session_store.get_session(session_id), self.settings, f"get session {session_id}"
        )
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        if user_id not in (session.student_id, session.tutor_id):
            raise ValidationError("You are not authorized to view this session")
        return session

    @staticmethod
    def _require_id(name: str, value: str) -> None:
        if not value or not value.strip():
            raise ValidationError(f"{name} is required")

    def _split(self, sessions: List[BookedSession], limit: Optional[int]) -> SessionListing:
        if limit is not None and limit < 1:
            raise ValidationError("Limit must be a positive number")

        now = self.clock()
        # Cancelled sessions never count as upcoming, whatever their start
        upcoming = sorted(
            (s for s in sessions if s.is_blocking and s.scheduled_start > now), key=lambda s: s.scheduled_start
        )
        upcoming_ids = {s.id for s in upcoming}
        past = sorted(
            (s for s in sessions if s.id not in upcoming_ids), key=lambda s: s.scheduled_start, reverse=True
        )

        if limit is not None:
            upcoming = upcoming[:limit]
            past = past[: max(0, limit - len(upcoming))]
        return SessionListing(upcoming=upcoming, past=past)
