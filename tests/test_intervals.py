"""
tests/test_intervals.py
Half-open range arithmetic used by availability validation and slot generation.
"""

from shared.utils.intervals import TimeRange, contains, overlaps, subtract


def test_overlaps_is_half_open():
    assert overlaps(TimeRange(9, 10), TimeRange(9, 11))
    assert overlaps(TimeRange(9, 11), TimeRange(10, 12))
    # Touching ranges do not overlap
    assert not overlaps(TimeRange(9, 10), TimeRange(10, 11))
    assert not overlaps(TimeRange(10, 11), TimeRange(9, 10))


def test_contains():
    window = TimeRange(9, 17)
    assert contains(window, TimeRange(9, 10))
    assert contains(window, TimeRange(16, 17))
    assert contains(window, window)
    assert not contains(window, TimeRange(8, 10))
    assert not contains(window, TimeRange(16, 18))


def test_subtract_without_busy_returns_window():
    assert subtract(TimeRange(9, 17), []) == [TimeRange(9, 17)]


def test_subtract_splits_around_busy_ranges():
    free = subtract(TimeRange(9, 17), [TimeRange(13, 14), TimeRange(10, 11)])
    assert free == [TimeRange(9, 10), TimeRange(11, 13), TimeRange(14, 17)]


def test_subtract_handles_overlapping_and_outside_busy_ranges():
    free = subtract(
        TimeRange(9, 17),
        [TimeRange(7, 9), TimeRange(10, 12), TimeRange(11, 13), TimeRange(16, 20)],
    )
    assert free == [TimeRange(9, 10), TimeRange(13, 16)]


def test_subtract_fully_busy_window_is_empty():
    assert subtract(TimeRange(9, 11), [TimeRange(8, 12)]) == []
