from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum


class SessionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# Statuses that occupy tutor time
BLOCKING_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.CONFIRMED})


class BookedSession(BaseModel):
    """A reservation as seen by the scheduler, independent of storage"""

    model_config = ConfigDict(frozen=True)

    id: str
    tutor_id: str
    student_id: str
    course_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    status: SessionStatus = SessionStatus.PENDING
    version: int = 0
    cancel_reason: Optional[str] = None

    @field_validator("scheduled_start", "scheduled_end")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("session timestamps must be timezone-aware")
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_range(self):
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.scheduled_end - self.scheduled_start).total_seconds() // 60)

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test against [start, end)"""
        return self.scheduled_start < end and start < self.scheduled_end


class SessionListing(BaseModel):
    """Sessions split around "now": upcoming soonest first, past most recent first"""

    model_config = ConfigDict(frozen=True)

    upcoming: List[BookedSession] = Field(default_factory=list)
    past: List[BookedSession] = Field(default_factory=list)

    @property
    def sessions(self) -> List[BookedSession]:
        return self.upcoming + self.past


class BookingCreateRequest(BaseModel):
    tutor_id: str = Field(..., min_length=1, description="Tutor ID")
    student_id: str = Field(..., min_length=1, description="Student ID")
    course_id: str = Field(..., min_length=1, description="Course ID")
    start: datetime = Field(..., description="Session start time (timezone-aware)")
    duration_minutes: int = Field(..., gt=0, description="Session duration in minutes")


class BookingCancelRequest(BaseModel):
    student_id: str = Field(..., min_length=1, description="Student ID that owns the session")
    reason: str = Field(..., description="Cancellation reason")


class BookingResponse(BaseModel):
    id: str = Field(..., description="Session ID")
    tutor_id: str = Field(..., description="Tutor ID")
    student_id: str = Field(..., description="Student ID")
    course_id: str = Field(..., description="Course ID")
    scheduled_start: datetime = Field(..., description="Session start time (UTC)")
    scheduled_end: datetime = Field(..., description="Session end time (UTC)")
    duration_minutes: int = Field(..., description="Session duration in minutes")
    status: SessionStatus = Field(..., description="Session status")
    version: int = Field(..., description="Row version")
    cancel_reason: Optional[str] = Field(None, description="Cancellation reason")

    @classmethod
    def from_session(cls, session: BookedSession) -> "BookingResponse":
        return cls(
            id=session.id,
            tutor_id=session.tutor_id,
            student_id=session.student_id,
            course_id=session.course_id,
            scheduled_start=session.scheduled_start,
            scheduled_end=session.scheduled_end,
            duration_minutes=session.duration_minutes,
            status=session.status,
            version=session.version,
            cancel_reason=session.cancel_reason,
        )


class SessionListResponse(BaseModel):
    sessions: List[BookingResponse] = Field(..., description="Upcoming sessions followed by past ones")
    upcoming: List[BookingResponse] = Field(..., description="Sessions that have not started, soonest first")
    past: List[BookingResponse] = Field(..., description="Started or cancelled sessions, most recent first")
    total_count: int
    upcoming_count: int
    past_count: int

    @classmethod
    def from_listing(cls, listing: SessionListing) -> "SessionListResponse":
        upcoming = [BookingResponse.from_session(s) for s in listing.upcoming]
        past = [BookingResponse.from_session(s) for s in listing.past]
        return cls(
            sessions=upcoming + past,
            upcoming=upcoming,
            past=past,
            total_count=len(upcoming) + len(past),
            upcoming_count=len(upcoming),
            past_count=len(past),
        )
