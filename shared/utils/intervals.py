"""
shared/utils/intervals.py
Pure helpers over half-open time ranges [start, end).
Works with any ordered values (datetimes, minute offsets, ...).
"""

from typing import Iterable, List, NamedTuple, Any


class TimeRange(NamedTuple):
    start: Any
    end: Any

    @property
    def is_empty(self) -> bool:
        return not self.start < self.end


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    """True iff the two half-open ranges share at least one instant."""
    return a.start < b.end and b.start < a.end


def contains(outer: TimeRange, inner: TimeRange) -> bool:
    """True iff inner lies entirely within outer."""
    return outer.start <= inner.start and inner.end <= outer.end


def subtract(window: TimeRange, busy_ranges: Iterable[TimeRange]) -> List[TimeRange]:
    """
    Cut every busy range out of window.
    Returns the uncovered sub-ranges of window, ordered by start.
    """
    free: List[TimeRange] = []
    cursor = window.start

    for busy in sorted(busy_ranges):
        if busy.end <= cursor or busy.is_empty:
            continue
        if busy.start >= window.end:
            break
        if busy.start > cursor:
            free.append(TimeRange(cursor, busy.start))
        cursor = max(cursor, busy.end)
        if cursor >= window.end:
            break

    if cursor < window.end:
        free.append(TimeRange(cursor, window.end))
    return free
