from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Optional

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class WeeklyAvailabilityTemplate(BaseModel):
    """A tutor's recurring weekly offer for one day-of-week window.

    ``day_of_week`` follows ``date.weekday()``: Monday is 0, Sunday is 6.
    Times are local to ``timezone``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    tutor_id: str = Field(..., min_length=1)
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time
    timezone: str = "UTC"
    is_available: bool = True
    recurrence_end_date: Optional[date] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @field_validator("start_time", "end_time")
    @classmethod
    def _strip_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0, tzinfo=None)

    @model_validator(mode="after")
    def _check_range(self):
        if self.start_time >= self.end_time:
            raise ValueError("Start time must be before end time")
        return self

    def is_active_on(self, on_date: date) -> bool:
        if not self.is_available:
            return False
        if self.recurrence_end_date is not None and on_date > self.recurrence_end_date:
            return False
        return True

    def overlaps(self, other: "WeeklyAvailabilityTemplate") -> bool:
        if self.day_of_week != other.day_of_week:
            return False
        return self.start_time < other.end_time and other.start_time < self.end_time

    def __str__(self) -> str:
        return f"{DAY_NAMES[self.day_of_week]} {self.start_time:%H:%M}-{self.end_time:%H:%M}"


@dataclass(frozen=True, order=True)
class ConcreteTimeWindow:
    """A template instantiated on one date, as absolute UTC timestamps"""

    start: datetime
    end: datetime
    tutor_id: str = field(compare=False)
    on_date: date = field(compare=False)
    template_id: Optional[str] = field(default=None, compare=False)
    timezone: str = field(default="UTC", compare=False)

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Empty window {self.start} - {self.end}")

    def contains(self, start: datetime, end: datetime) -> bool:
        return self.start <= start and end <= self.end


@dataclass(frozen=True, order=True)
class FreeInterval:
    """Unbooked part of a window, half-open [start, end)"""

    start: datetime
    end: datetime
    window: ConcreteTimeWindow = field(compare=False)

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Empty interval {self.start} - {self.end}")
        if not self.window.contains(self.start, self.end):
            raise ValueError("Free interval escapes its window")

    @property
    def length(self) -> timedelta:
        return self.end - self.start


class AvailabilityQuery(BaseModel):
    course_id: str = Field(..., min_length=1, description="Course ID")
    on_date: date = Field(..., description="Requested calendar date")
    duration_minutes: int = Field(..., gt=0, description="Session duration in minutes")
    tutor_id: Optional[str] = Field(None, min_length=1, description="Restrict search to one tutor")


@dataclass(frozen=True)
class AvailableSlotResult:
    """One window of one tutor with the start times that can be booked in it"""

    tutor_id: str
    window: ConcreteTimeWindow
    candidate_start_times: List[datetime]


class SlotResultResponse(BaseModel):
    tutor_id: str = Field(..., description="Tutor ID")
    window_start: datetime = Field(..., description="Availability window start (UTC)")
    window_end: datetime = Field(..., description="Availability window end (UTC)")
    candidate_start_times: List[datetime] = Field(..., description="Bookable start times, ascending")

    @classmethod
    def from_result(cls, result: AvailableSlotResult) -> "SlotResultResponse":
        return cls(
            tutor_id=result.tutor_id,
            window_start=result.window.start,
            window_end=result.window.end,
            candidate_start_times=list(result.candidate_start_times),
        )
