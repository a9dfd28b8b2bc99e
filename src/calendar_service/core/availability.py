# Free/busy and conflict detection
# Interval logic over expanded occurrences

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .recurrence import Occurrence


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime


def busy_intervals(occurrences: Iterable[Occurrence]) -> list[Interval]:
    """One busy interval per occurrence, unclipped, sorted by start then end."""
    intervals = [Interval(occ.start, occ.end) for occ in occurrences]
    intervals.sort(key=lambda i: (i.start, i.end))
    return intervals


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Coalesce overlapping or touching intervals."""
    merged: list[Interval] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = Interval(last.start, interval.end)
            continue
        merged.append(interval)
    return merged


def overlaps(occurrence: Occurrence, start: datetime, end: datetime) -> bool:
    """Strict overlap test: eventStart < candidateEnd and eventEnd > candidateStart."""
    return occurrence.start < end and occurrence.end > start


def find_conflicts(
    occurrences: Iterable[Occurrence],
    start: datetime,
    end: datetime,
    exclude_event_id: Optional[str] = None,
) -> list[Occurrence]:
    """
    Occurrences overlapping the candidate span [start, end).

    With `exclude_event_id`, occurrences of that event (or of the series it
    belongs to) are ignored so an event being moved does not clash with itself.
    """
    conflicts = []
    for occ in occurrences:
        if exclude_event_id is not None and exclude_event_id in (
            occ.event.id,
            occ.series_id,
        ):
            continue
        if overlaps(occ, start, end):
            conflicts.append(occ)
    return conflicts
