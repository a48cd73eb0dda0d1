from datetime import datetime, timedelta

from tutoring_scheduler.core.config import Settings
from tutoring_scheduler.core.exceptions import ValidationError


def validate_duration(duration_minutes: int, settings: Settings) -> None:
    allowed = sorted(settings.ALLOWED_DURATIONS)
    if duration_minutes not in allowed:
        raise ValidationError(
            f"Duration must be one of {', '.join(str(d) for d in allowed)} minutes, got {duration_minutes}"
        )


def earliest_bookable_start(now: datetime, settings: Settings) -> datetime:
    """Sessions must start at least MIN_ADVANCE_MINUTES after ``now``"""
    return now + timedelta(minutes=settings.MIN_ADVANCE_MINUTES)
