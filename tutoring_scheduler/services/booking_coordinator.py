import enum
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import pytz

from tutoring_scheduler.core.config import Settings
from tutoring_scheduler.core.exceptions import (
    ConflictError,
    NotFoundError,
    SchedulerException,
    ValidationError,
)
from tutoring_scheduler.core.retry import call_with_deadline, read_with_retry
from tutoring_scheduler.schemas.availability import ConcreteTimeWindow
from tutoring_scheduler.schemas.booking import BookedSession, SessionStatus
from tutoring_scheduler.services.availability_index import AvailabilityIndex
from tutoring_scheduler.services.conflict_resolver import ConflictResolver
from tutoring_scheduler.services.policy import earliest_bookable_start, validate_duration
from tutoring_scheduler.services.slot_generator import candidate_starts, is_aligned
from tutoring_scheduler.services.stores import Conflict, CourseTutorStore, SessionStore, TemplateStore

logger = logging.getLogger(__name__)


class BookingState(str, enum.Enum):
    REQUESTED = "requested"
    VALIDATING = "validating"
    CONFIRMED = "confirmed"
    CONFLICT = "conflict"
    FAILED = "failed"


class BookingCoordinator:
    """Authoritative booking path.

    Every booking re-reads templates and sessions and reruns the slot pipeline
    before committing, so a stale search result can never produce an
    overlapping session. The commit itself is a conditional write in the
    session store; whichever commit the store accepts first wins and the others
    get ConflictError. Nothing is written before the commit, so a caller may
    abandon a booking at any earlier point.
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

    @property
    def write_deadline(self) -> float:
        """Upper bound for a commit or cancel, which are never retried here"""
        # A store may spend up to COMMIT_CAS_ATTEMPTS round trips re-checking a busy schedule
        return self.settings.STORE_TIMEOUT_SECONDS * max(1, self.settings.COMMIT_CAS_ATTEMPTS)

    def _transition(self, booking_ref: str, state: BookingState, detail: str = "") -> None:
        message = f"Booking {booking_ref} -> {state.value}"
        if detail:
            message = f"{message}: {detail}"
        if state in (BookingState.CONFLICT, BookingState.FAILED):
            logger.warning(message)
        else:
            logger.info(message)

    async def book(
        self,
        tutor_id: str,
        student_id: str,
        course_id: str,
        start: datetime,
        duration_minutes: int,
    ) -> BookedSession:
        """Commit a session for ``[start, start + duration)`` or raise.

        Raises ValidationError, ConflictError, StoreUnavailable or
        StoreRetriesExhausted.
        """
        booking_ref = f"{tutor_id}@{start.isoformat()}"
        self._transition(booking_ref, BookingState.REQUESTED, f"student={student_id} course={course_id}")

        try:
            self._validate_request(tutor_id, student_id, course_id, start, duration_minutes)
            self._transition(booking_ref, BookingState.VALIDATING)
            candidate = await self._validate_against_store(tutor_id, student_id, course_id, start, duration_minutes)

            outcome = await call_with_deadline(
                lambda: self.session_store.try_commit(candidate, self._conflict_predicate(candidate)),
                self.write_deadline,
                f"commit session for tutor {tutor_id}",
            )
        except ConflictError as e:
            self._transition(booking_ref, BookingState.CONFLICT, str(e))
            raise
        except SchedulerException as e:
            self._transition(booking_ref, BookingState.FAILED, str(e))
            raise

        if isinstance(outcome, Conflict):
            self._transition(booking_ref, BookingState.CONFLICT, outcome.reason)
            raise ConflictError(outcome.reason, outcome.conflicting_ids)

        self._transition(booking_ref, BookingState.CONFIRMED, f"session={outcome.id}")
        return outcome

    def _validate_request(
        self, tutor_id: str, student_id: str, course_id: str, start: datetime, duration_minutes: int
    ) -> None:
        for name, value in (("Tutor ID", tutor_id), ("Student ID", student_id), ("Course ID", course_id)):
            if not value or not value.strip():
                raise ValidationError(f"{name} is required")

        validate_duration(duration_minutes, self.settings)

        if start.tzinfo is None:
            raise ValidationError("Start time must include a timezone")

        now = self.clock()
        if start < now:
            raise ValidationError("Start time is in the past")
        if start < earliest_bookable_start(now, self.settings):
            raise ValidationError(
                f"Sessions must be booked at least {self.settings.MIN_ADVANCE_MINUTES} minutes in advance"
            )

    async def _validate_against_store(
        self, tutor_id: str, student_id: str, course_id: str, start: datetime, duration_minutes: int
    ) -> BookedSession:
        end = start + timedelta(minutes=duration_minutes)

        tutor_ids = await read_with_retry(
            lambda: self.course_tutor_store.list_tutor_ids(course_id),
            self.settings,
            f"list tutors for course {course_id}",
        )
        if tutor_id not in tutor_ids:
            raise ValidationError(f"Tutor {tutor_id} does not teach course {course_id}")

        templates = await self.availability_index.list_templates(tutor_id)
        tz_name = self.availability_index.resolve_timezone(templates)
        local_date = start.astimezone(pytz.timezone(tz_name)).date()
        self.availability_index.validate_date(local_date)

        windows = self.availability_index.expand(templates, local_date)
        window = self._containing_window(windows, start, end)
        if window is None:
            raise ValidationError("Requested time is outside the tutor's availability")
        if not is_aligned(start, window, self.settings.SLOT_GRANULARITY_MINUTES):
            raise ValidationError(
                f"Start time must fall on a {self.settings.SLOT_GRANULARITY_MINUTES}-minute boundary of the availability window"
            )

        sessions = await read_with_retry(
            lambda: self.session_store.list_sessions_on_date(tutor_id, local_date, tz_name),
            self.settings,
            f"list sessions for tutor {tutor_id} on {local_date}",
        )
        free = self.conflict_resolver.free_intervals([window], sessions)
        if start not in candidate_starts(free, duration_minutes, self.settings.SLOT_GRANULARITY_MINUTES):
            raise ConflictError(
                "Tutor is not available at the requested time",
                [s.id for s in sessions if s.overlaps(start, end)],
            )

        if not self.settings.ALLOW_STUDENT_CONFLICTS:
            student_sessions = await read_with_retry(
                lambda: self.session_store.list_student_sessions_between(student_id, start, end),
                self.settings,
                f"list sessions for student {student_id}",
            )
            if student_sessions:
                raise ConflictError(
                    "You already have a session scheduled at this time", [s.id for s in student_sessions]
                )

        return BookedSession(
            id=str(uuid.uuid4()),
            tutor_id=tutor_id,
            student_id=student_id,
            course_id=course_id,
            scheduled_start=start,
            scheduled_end=end,
            status=SessionStatus.PENDING,
            version=0,
        )

    @staticmethod
    def _containing_window(
        windows: List[ConcreteTimeWindow], start: datetime, end: datetime
    ) -> Optional[ConcreteTimeWindow]:
        for window in windows:
            if window.contains(start, end):
                return window
        return None

    def _conflict_predicate(self, candidate: BookedSession):
        buffer = self.conflict_resolver.buffer

        def conflicts(existing: BookedSession) -> bool:
            if existing.id == candidate.id or not existing.is_blocking:
                return False
            return existing.overlaps(candidate.scheduled_start - buffer, candidate.scheduled_end + buffer)

        return conflicts

    async def cancel(self, session_id: str, student_id: str, reason: str) -> BookedSession:
        """Cancel a confirmed session on behalf of the student who booked it"""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Cancel reason is required")
        if len(reason) > self.settings.MAX_CANCEL_REASON_LENGTH:
            raise ValidationError(
                f"Cancel reason cannot exceed {self.settings.MAX_CANCEL_REASON_LENGTH} characters"
            )

        session = await read_with_retry(
            lambda: self.session_store.get_session(session_id), self.settings, f"get session {session_id}"
        )
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        if session.student_id != student_id:
            raise ValidationError("You are not authorized to cancel this session")
        if session.status != SessionStatus.CONFIRMED:
            raise ValidationError("This session cannot be cancelled in its current state")
        if session.scheduled_start < earliest_bookable_start(self.clock(), self.settings):
            raise ValidationError(
                f"Sessions can only be cancelled at least {self.settings.MIN_ADVANCE_MINUTES} minutes in advance"
            )

        outcome = await call_with_deadline(
            lambda: self.session_store.try_cancel(session, reason), self.write_deadline, f"cancel session {session_id}"
        )
        if isinstance(outcome, Conflict):
            logger.warning(f"Cancellation of session {session_id} lost a race: {outcome.reason}")
            raise ConflictError(outcome.reason, outcome.conflicting_ids)

        logger.info(f"Session {session_id} cancelled by student {student_id}")
        return outcome
