from datetime import datetime, timezone
from types import SimpleNamespace

from calendar_service.core.availability import (
    Interval,
    busy_intervals,
    find_conflicts,
    merge_intervals,
)
from calendar_service.core.recurrence import Occurrence


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 6, hour, minute, tzinfo=timezone.utc)


def occurrence(event_id, start, end, series_id=None):
    return Occurrence(
        event=SimpleNamespace(id=event_id),
        start=start,
        end=end,
        series_id=series_id,
        original_start=start if series_id else None,
    )


A = occurrence("a", at(10), at(11))
B = occurrence("b", at(10, 30), at(11, 30))


def test_conflicts_use_strict_overlap():
    assert find_conflicts([A, B], at(10), at(11)) == [A, B]
    assert find_conflicts([A, B], at(11, 30), at(12)) == []
    # Touching is not overlapping
    assert find_conflicts([A], at(11), at(12)) == []


def test_excluded_event_does_not_conflict_with_itself():
    series = occurrence("exc-1", at(10), at(11), series_id="series-1")
    assert find_conflicts([A, series], at(10), at(11), exclude_event_id="a") == [series]
    assert find_conflicts([A, series], at(10), at(11), exclude_event_id="series-1") == [A]


def test_busy_intervals_are_raw_and_sorted():
    assert busy_intervals([B, A]) == [
        Interval(at(10), at(11)),
        Interval(at(10, 30), at(11, 30)),
    ]


def test_merge_coalesces_overlapping_and_touching():
    later = Interval(at(11, 30), at(12))
    separate = Interval(at(14), at(15))
    merged = merge_intervals(busy_intervals([A, B]) + [separate, later])
    assert merged == [Interval(at(10), at(12)), Interval(at(14), at(15))]


def test_merge_keeps_contained_interval_inside():
    outer = Interval(at(9), at(17))
    inner = Interval(at(10), at(11))
    assert merge_intervals([inner, outer]) == [outer]
