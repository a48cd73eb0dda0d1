from datetime import datetime, timedelta
from typing import Iterable, List, Tuple

from tutoring_scheduler.schemas.availability import ConcreteTimeWindow, FreeInterval
from tutoring_scheduler.schemas.booking import BookedSession

Span = Tuple[datetime, datetime]


def merge_spans(spans: Iterable[Span]) -> List[Span]:
    """Sort and merge overlapping half-open spans"""
    merged: List[Span] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


class ConflictResolver:
    """Subtracts booked sessions from availability windows"""

    def __init__(self, buffer_minutes: int = 0):
        if buffer_minutes < 0:
            raise ValueError("buffer_minutes cannot be negative")
        self.buffer = timedelta(minutes=buffer_minutes)

    def busy_spans(self, sessions: Iterable[BookedSession]) -> List[Span]:
        """Merged spans occupied by blocking sessions, widened by the buffer"""
        return merge_spans(
            (session.scheduled_start - self.buffer, session.scheduled_end + self.buffer)
            for session in sessions
            if session.is_blocking
        )

    def free_intervals(
        self, windows: Iterable[ConcreteTimeWindow], booked_sessions: Iterable[BookedSession]
    ) -> List[FreeInterval]:
        busy = self.busy_spans(booked_sessions)
        free: List[FreeInterval] = []

        for window in sorted(windows):
            cursor = window.start
            for busy_start, busy_end in busy:
                if busy_end <= cursor:
                    continue
                if busy_start >= window.end:
                    break
                if busy_start > cursor:
                    free.append(FreeInterval(start=cursor, end=busy_start, window=window))
                cursor = busy_end
                if cursor >= window.end:
                    break
            if cursor < window.end:
                free.append(FreeInterval(start=cursor, end=window.end, window=window))

        return free
