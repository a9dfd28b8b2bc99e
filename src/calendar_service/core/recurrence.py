# Recurrence engine
# RRULE parsing and lazy, window-bounded expansion of series into occurrences

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Optional

from dateutil.rrule import (
    DAILY,
    WEEKLY,
    MONTHLY,
    YEARLY,
    MO,
    TU,
    WE,
    TH,
    FR,
    SA,
    SU,
    rrule,
)

from .errors import ValidationError
from .utils import as_utc, intersects, resolve_timezone

logger = logging.getLogger(__name__)

MAX_INSTANCES = 2500

FREQUENCIES = {
    "DAILY": DAILY,
    "WEEKLY": WEEKLY,
    "MONTHLY": MONTHLY,
    "YEARLY": YEARLY,
}

WEEKDAYS = {
    "MO": MO,
    "TU": TU,
    "WE": WE,
    "TH": TH,
    "FR": FR,
    "SA": SA,
    "SU": SU,
}

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


# ============================================================================
# RULE PARSING
# ============================================================================


@dataclass(frozen=True)
class RecurrenceRule:
    """Parsed form of an RRULE value such as `FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE`."""

    freq: str
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_day: tuple[str, ...] = field(default_factory=tuple)
    by_month: tuple[int, ...] = field(default_factory=tuple)
    by_month_day: tuple[int, ...] = field(default_factory=tuple)

    def to_rrule(self, dtstart: datetime) -> rrule:
        """
        Build a dateutil rrule anchored at a naive wall-clock dtstart.

        UNTIL is not handed to dateutil: bounds are applied by the expansion
        loop in UTC so that naive local times never get compared with aware
        instants.
        """
        kwargs: dict[str, Any] = {
            "dtstart": dtstart,
            "interval": self.interval,
        }
        if self.count is not None:
            kwargs["count"] = self.count
        if self.by_day:
            kwargs["byweekday"] = [_to_weekday(code) for code in self.by_day]
        if self.by_month:
            kwargs["bymonth"] = list(self.by_month)
        if self.by_month_day:
            kwargs["bymonthday"] = list(self.by_month_day)
        return rrule(FREQUENCIES[self.freq], **kwargs)

    def to_string(self) -> str:
        parts = [f"FREQ={self.freq}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={self.until.strftime('%Y%m%dT%H%M%SZ')}")
        if self.by_day:
            parts.append(f"BYDAY={','.join(self.by_day)}")
        if self.by_month:
            parts.append(f"BYMONTH={','.join(str(m) for m in self.by_month)}")
        if self.by_month_day:
            parts.append(f"BYMONTHDAY={','.join(str(d) for d in self.by_month_day)}")
        return ";".join(parts)


def _to_weekday(code: str):
    match = _BYDAY_RE.match(code)
    if match is None:
        raise ValidationError(
            f"Invalid BYDAY value in recurrence rule: {code!r}",
            field="recurrenceRule",
        )
    ordinal, day = match.groups()
    weekday = WEEKDAYS[day]
    return weekday(int(ordinal)) if ordinal else weekday


def _parse_int_list(name: str, value: str, low: int, high: int) -> tuple[int, ...]:
    items = []
    for raw in value.split(","):
        try:
            number = int(raw)
        except ValueError:
            raise ValidationError(
                f"Invalid {name} value in recurrence rule: {raw!r}",
                field="recurrenceRule",
            )
        if number == 0 or not low <= abs(number) <= high:
            raise ValidationError(
                f"{name} value out of range in recurrence rule: {number}",
                field="recurrenceRule",
            )
        items.append(number)
    return tuple(items)


def _parse_until(value: str) -> datetime:
    """UNTIL as an aware UTC instant. Date-only values cover the whole day."""
    try:
        if len(value) == 8:
            day = datetime.strptime(value, "%Y%m%d")
            return day.replace(hour=23, minute=59, second=59, tzinfo=timezone.utc)
        if value.endswith("Z"):
            return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(
                tzinfo=timezone.utc
            )
        return datetime.strptime(value, "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(
            f"Invalid UNTIL value in recurrence rule: {value!r}",
            field="recurrenceRule",
        )


def parse_rule(text: str) -> RecurrenceRule:
    """
    Parse a recurrence rule string.

    Accepts an optional `RRULE:` prefix. Supported parts: FREQ (required),
    INTERVAL, COUNT, UNTIL, BYDAY, BYMONTH, BYMONTHDAY, WKST (ignored).

    Raises:
        ValidationError: if the rule is malformed or uses unsupported parts
    """
    if not text or not text.strip():
        raise ValidationError("Recurrence rule is empty", field="recurrenceRule")

    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:") :]

    parts: dict[str, str] = {}
    for chunk in body.split(";"):
        if not chunk:
            continue
        key, sep, value = chunk.partition("=")
        if not sep or not value:
            raise ValidationError(
                f"Malformed recurrence rule part: {chunk!r}", field="recurrenceRule"
            )
        parts[key.strip().upper()] = value.strip().upper()

    freq = parts.pop("FREQ", None)
    if freq is None:
        raise ValidationError("Recurrence rule requires FREQ", field="recurrenceRule")
    if freq not in FREQUENCIES:
        raise ValidationError(
            f"Unsupported recurrence frequency: {freq}", field="recurrenceRule"
        )

    interval = 1
    if "INTERVAL" in parts:
        try:
            interval = int(parts.pop("INTERVAL"))
        except ValueError:
            raise ValidationError(
                "INTERVAL must be an integer", field="recurrenceRule"
            )
        if interval < 1:
            raise ValidationError("INTERVAL must be positive", field="recurrenceRule")

    count = None
    if "COUNT" in parts:
        try:
            count = int(parts.pop("COUNT"))
        except ValueError:
            raise ValidationError("COUNT must be an integer", field="recurrenceRule")
        if count < 1:
            raise ValidationError("COUNT must be positive", field="recurrenceRule")

    until = _parse_until(parts.pop("UNTIL")) if "UNTIL" in parts else None
    if count is not None and until is not None:
        raise ValidationError(
            "COUNT and UNTIL cannot both be set", field="recurrenceRule"
        )

    by_day: tuple[str, ...] = ()
    if "BYDAY" in parts:
        by_day = tuple(code.strip() for code in parts.pop("BYDAY").split(","))
        for code in by_day:
            match = _BYDAY_RE.match(code)
            # Ordinals count weeks within a month or year: +-1 through +-53
            if not match or (match.group(1) and not 1 <= abs(int(match.group(1))) <= 53):
                raise ValidationError(
                    f"Invalid BYDAY value in recurrence rule: {code!r}",
                    field="recurrenceRule",
                )

    by_month = (
        _parse_int_list("BYMONTH", parts.pop("BYMONTH"), 1, 12)
        if "BYMONTH" in parts
        else ()
    )
    if any(month < 0 for month in by_month):
        raise ValidationError("BYMONTH values must be positive", field="recurrenceRule")
    by_month_day = (
        _parse_int_list("BYMONTHDAY", parts.pop("BYMONTHDAY"), 1, 31)
        if "BYMONTHDAY" in parts
        else ()
    )

    parts.pop("WKST", None)
    if parts:
        raise ValidationError(
            f"Unsupported recurrence rule parts: {', '.join(sorted(parts))}",
            field="recurrenceRule",
        )

    return RecurrenceRule(
        freq=freq,
        interval=interval,
        count=count,
        until=until,
        by_day=by_day,
        by_month=by_month,
        by_month_day=by_month_day,
    )


# ============================================================================
# OCCURRENCES
# ============================================================================


@dataclass(frozen=True)
class Occurrence:
    """
    One concrete instance in time.

    `event` is the row whose fields describe the occurrence: the series base
    for computed occurrences, the exception row for overridden ones, or the
    event itself for standalone events.
    """

    event: Any
    start: datetime
    end: datetime
    series_id: Optional[str] = None
    original_start: Optional[datetime] = None

    @property
    def is_recurring(self) -> bool:
        return self.series_id is not None

    @property
    def is_exception(self) -> bool:
        return getattr(self.event, "parent_event_id", None) is not None


def event_duration(event: Any) -> timedelta:
    """Duration of an event's first occurrence (endAt - startAt)."""
    return as_utc(event.end_at) - as_utc(event.start_at)


def _wall_clock(event: Any):
    """
    Conversions between instants and the naive wall-clock times rules run on.

    All-day events use calendar dates (midnight UTC boundaries), so day
    arithmetic is unaffected by daylight-saving transitions. Timed events
    recur at the same local time in their authored timezone.
    """
    if event.all_day:

        def to_local(instant: datetime) -> datetime:
            return as_utc(instant).replace(tzinfo=None)

        def to_utc(local: datetime) -> datetime:
            return local.replace(tzinfo=timezone.utc)

    else:
        tz = resolve_timezone(event.timezone)

        def to_local(instant: datetime) -> datetime:
            return as_utc(instant).astimezone(tz).replace(tzinfo=None)

        def to_utc(local: datetime) -> datetime:
            return local.replace(tzinfo=tz).astimezone(timezone.utc)

    return to_local, to_utc


def series_bound(event: Any, rule: Optional[RecurrenceRule] = None) -> Optional[datetime]:
    """Latest instant an occurrence of the series may start at, if bounded."""
    rule = rule or parse_rule(event.recurrence_rule)
    bounds = [b for b in (rule.until, event.recurrence_end_at) if b is not None]
    if not bounds:
        return None
    return min(as_utc(b) for b in bounds)


def occurrence_starts(
    event: Any,
    after: datetime,
    before: datetime,
    max_instances: int = MAX_INSTANCES,
) -> Iterator[datetime]:
    """
    Lazily yield original occurrence starts of a series base in [after, before].

    Iteration seeks to the first candidate at or after `after` instead of
    walking every occurrence since the series began, and stops at the
    earliest of `before`, the rule's UNTIL and the event's recurrenceEndAt.
    """
    rule = parse_rule(event.recurrence_rule)
    to_local, to_utc = _wall_clock(event)

    limit = as_utc(before)
    bound = series_bound(event, rule)
    if bound is not None and bound < limit:
        limit = bound

    series_start = as_utc(event.start_at)
    lower = max(as_utc(after), series_start)
    if lower > limit:
        return

    rr = rule.to_rrule(to_local(series_start))
    # A day of slack absorbs UTC offset changes between seek and candidate
    seek = to_local(lower) - timedelta(days=1)
    candidates = rr.xafter(seek, inc=True) if seek > to_local(series_start) else iter(rr)

    produced = 0
    for local in candidates:
        start = to_utc(local)
        if start > limit:
            break
        if start < lower:
            continue
        yield start
        produced += 1
        if produced >= max_instances:
            logger.warning(
                "Recurrence expansion for event %s hit the %d instance cap",
                getattr(event, "id", None),
                max_instances,
            )
            break


def is_occurrence(event: Any, instant: datetime) -> bool:
    """True if `instant` is an original occurrence start of the series."""
    instant = as_utc(instant)
    return any(start == instant for start in occurrence_starts(event, instant, instant))


def wall_clock_shift(before: Any, after: Any) -> Callable[[datetime], datetime]:
    """
    Map occurrence starts of a series onto the same series after a re-timing.

    `before` and `after` carry start_at, all_day and timezone. Each instant
    moves by the local-time difference between the two first starts, so a
    series moved from 09:00 to 10:00 maps every 09:00 occurrence to 10:00
    on the same day, even across daylight-saving changes.
    """
    old_local, _ = _wall_clock(before)
    new_local, new_utc = _wall_clock(after)
    delta = new_local(after.start_at) - old_local(before.start_at)

    def shift(instant: datetime) -> datetime:
        return new_utc(old_local(instant) + delta)

    return shift


def expand_series(
    base: Any,
    exceptions: Iterable[Any],
    window_start: datetime,
    window_end: datetime,
    max_instances: int = MAX_INSTANCES,
) -> list[Occurrence]:
    """
    Expand a series base into the occurrences intersecting [window_start, window_end).

    Exceptions replace the computed occurrence they were detached from:
    cancelled ones remove it, modified ones are yielded with their own
    fields whenever their (possibly moved) span intersects the window.
    """
    window_start = as_utc(window_start)
    window_end = as_utc(window_end)
    duration = event_duration(base)

    overridden: dict[datetime, Any] = {}
    for exc in exceptions:
        if exc.occurrence_start_at is not None:
            overridden[as_utc(exc.occurrence_start_at)] = exc

    results: list[Occurrence] = []
    for start in occurrence_starts(
        base, window_start - duration, window_end, max_instances=max_instances
    ):
        end = start + duration
        if not intersects(start, end, window_start, window_end):
            continue
        if start in overridden:
            continue
        results.append(
            Occurrence(
                event=base,
                start=start,
                end=end,
                series_id=base.id,
                original_start=start,
            )
        )

    for original_start, exc in overridden.items():
        # Exceptions left behind by a series edit no longer replace anything
        if exc.cancelled or not is_occurrence(base, original_start):
            continue
        start, end = as_utc(exc.start_at), as_utc(exc.end_at)
        if intersects(start, end, window_start, window_end):
            results.append(
                Occurrence(
                    event=exc,
                    start=start,
                    end=end,
                    series_id=base.id,
                    original_start=original_start,
                )
            )

    results.sort(key=lambda occ: occ.start)
    return results


def expand_events(
    events: Iterable[Any],
    exceptions_by_parent: dict[str, list[Any]],
    window_start: datetime,
    window_end: datetime,
) -> list[Occurrence]:
    """
    Turn standalone events and series bases into a sorted occurrence list.

    A base whose rule cannot be expanded is logged and skipped so that one
    corrupt row does not fail the whole window.
    """
    window_start = as_utc(window_start)
    window_end = as_utc(window_end)
    results: list[Occurrence] = []

    for event in events:
        if event.recurrence_rule:
            try:
                results.extend(
                    expand_series(
                        event,
                        exceptions_by_parent.get(event.id, []),
                        window_start,
                        window_end,
                    )
                )
            except (ValidationError, ValueError) as e:
                logger.warning("Failed to expand recurrence for event %s: %s", event.id, e)
            continue

        start, end = as_utc(event.start_at), as_utc(event.end_at)
        if intersects(start, end, window_start, window_end):
            results.append(Occurrence(event=event, start=start, end=end))

    results.sort(key=lambda occ: (occ.start, occ.end))
    return results
