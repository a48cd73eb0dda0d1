from datetime import datetime, timedelta
from typing import Iterable, List

from tutoring_scheduler.schemas.availability import ConcreteTimeWindow, FreeInterval


def is_aligned(start: datetime, window: ConcreteTimeWindow, granularity_minutes: int) -> bool:
    """Whether ``start`` sits on the granularity grid anchored at the window start"""
    return (start - window.start) % timedelta(minutes=granularity_minutes) == timedelta(0)


def candidate_starts(
    free_intervals: Iterable[FreeInterval], duration_minutes: int, granularity_minutes: int
) -> List[datetime]:
    """Every grid-aligned start time whose session fits inside a free interval.

    The grid is anchored at each interval's originating window, so an interval
    that starts off-grid (after a misaligned booking) begins at the next grid
    point. Results are ascending and unique.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")

    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=granularity_minutes)
    starts = set()

    for interval in free_intervals:
        if interval.length < duration:
            continue
        offset = interval.start - interval.window.start
        steps = -(-offset // step)
        candidate = interval.window.start + steps * step
        while candidate + duration <= interval.end:
            starts.add(candidate)
            candidate += step

    return sorted(starts)
