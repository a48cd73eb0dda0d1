"""Single-process stores backing the service and HTTP tests.

Commits are serialized per tutor with an ``asyncio.Lock``, which is only
sufficient when one event loop owns the data.
"""
import asyncio
import uuid
from collections import defaultdict
from datetime import date, datetime, time
from typing import Callable, Dict, List, Optional

from tutoring_scheduler.schemas.availability import WeeklyAvailabilityTemplate
from tutoring_scheduler.schemas.booking import BookedSession, SessionStatus
from tutoring_scheduler.services.stores import (
    CommitResult,
    Conflict,
    ConflictPredicate,
    build_template,
    check_new_template,
    local_day_bounds,
)


class InMemoryTemplateStore:
    def __init__(self, default_timezone: str = "UTC"):
        self.default_timezone = default_timezone
        self._templates: Dict[str, List[WeeklyAvailabilityTemplate]] = defaultdict(list)

    async def list_templates(self, tutor_id: str) -> List[WeeklyAvailabilityTemplate]:
        await asyncio.sleep(0)
        return list(self._templates.get(tutor_id, []))

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
        check_new_template(self._templates[tutor_id], template)
        self._templates[tutor_id].append(template)
        return template


class InMemoryCourseTutorStore:
    def __init__(self):
        self._tutors: Dict[str, List[str]] = defaultdict(list)

    async def list_tutor_ids(self, course_id: str) -> List[str]:
        await asyncio.sleep(0)
        return sorted(self._tutors.get(course_id, []))

    async def assign_tutor(self, course_id: str, tutor_id: str) -> None:
        if tutor_id not in self._tutors[course_id]:
            self._tutors[course_id].append(tutor_id)


class InMemorySessionStore:
    def __init__(self):
        self._sessions: Dict[str, BookedSession] = {}
        self._versions: Dict[str, int] = defaultdict(int)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def schedule_version(self, tutor_id: str) -> int:
        return self._versions[tutor_id]

    def all_sessions(self) -> List[BookedSession]:
        return sorted(self._sessions.values(), key=lambda s: (s.tutor_id, s.scheduled_start))

    def _sorted(self, predicate: Callable[[BookedSession], bool]) -> List[BookedSession]:
        return sorted((s for s in self._sessions.values() if predicate(s)), key=lambda s: s.scheduled_start)

    def _blocking(self, predicate: Callable[[BookedSession], bool]) -> List[BookedSession]:
        return self._sorted(lambda s: s.is_blocking and predicate(s))

    async def list_sessions_on_date(self, tutor_id: str, on_date: date, tz_name: str) -> List[BookedSession]:
        await asyncio.sleep(0)
        day_start, day_end = local_day_bounds(on_date, tz_name)
        return self._blocking(lambda s: s.tutor_id == tutor_id and s.overlaps(day_start, day_end))

    async def list_student_sessions_between(
        self, student_id: str, start: datetime, end: datetime
    ) -> List[BookedSession]:
        await asyncio.sleep(0)
        return self._blocking(lambda s: s.student_id == student_id and s.overlaps(start, end))

    async def list_sessions_for_student(
        self, student_id: str, status: Optional[SessionStatus] = None
    ) -> List[BookedSession]:
        await asyncio.sleep(0)
        return self._sorted(lambda s: s.student_id == student_id and (status is None or s.status == status))

    async def list_sessions_for_tutor(
        self, tutor_id: str, status: Optional[SessionStatus] = None
    ) -> List[BookedSession]:
        await asyncio.sleep(0)
        return self._sorted(lambda s: s.tutor_id == tutor_id and (status is None or s.status == status))

    async def get_session(self, session_id: str) -> Optional[BookedSession]:
        await asyncio.sleep(0)
        return self._sessions.get(session_id)

    async def try_commit(self, candidate: BookedSession, conflict_predicate: ConflictPredicate) -> CommitResult:
        async with self._locks[candidate.tutor_id]:
            await asyncio.sleep(0)
            conflicting = [
                s.id for s in self._blocking(lambda s: s.tutor_id == candidate.tutor_id) if conflict_predicate(s)
            ]
            if conflicting:
                return Conflict("Tutor is not available at the requested time", conflicting)

            confirmed = candidate.model_copy(update={"status": SessionStatus.CONFIRMED, "version": 1})
            self._sessions[confirmed.id] = confirmed
            self._versions[candidate.tutor_id] += 1
            return confirmed

    async def try_cancel(self, session: BookedSession, reason: str) -> CommitResult:
        async with self._locks[session.tutor_id]:
            await asyncio.sleep(0)
            current = self._sessions.get(session.id)
            if current is None or current.version != session.version or current.status != SessionStatus.CONFIRMED:
                return Conflict("Session changed since it was read", [session.id])

            cancelled = current.model_copy(
                update={
                    "status": SessionStatus.CANCELLED,
                    "version": current.version + 1,
                    "cancel_reason": reason,
                }
            )
            self._sessions[cancelled.id] = cancelled
            return cancelled
