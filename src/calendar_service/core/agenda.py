# Schedule summaries
# Upcoming events, today's schedule and availability built from occurrences

from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Optional

from .recurrence import Occurrence
from .utils import as_utc, format_rfc3339

UPCOMING_DAYS = 7
UPCOMING_LIMIT = 20


def _minutes(delta: timedelta) -> int:
    return round(delta.total_seconds() / 60)


def local_day_bounds(now: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """UTC bounds of the calendar day containing `now` in `tz`."""
    local = as_utc(now).astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    # Same-tzinfo arithmetic is wall-clock, so DST days stay one calendar day
    return as_utc(midnight), as_utc(midnight + timedelta(days=1))


def local_date(instant: datetime, tz: tzinfo) -> date:
    return as_utc(instant).astimezone(tz).date()


def occurrence_date(occ: Occurrence, tz: tzinfo) -> date:
    """Calendar date an occurrence falls on; all-day events carry their own date."""
    if occ.event.all_day:
        return occ.start.date()
    return local_date(occ.start, tz)


def _brief(occ: Occurrence) -> dict[str, Any]:
    event = occ.event
    return {
        "id": event.id,
        "seriesId": occ.series_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "startTime": format_rfc3339(occ.start),
        "endTime": format_rfc3339(occ.end),
        "isAllDay": event.all_day,
    }


def day_status(count: int) -> str:
    if count == 0:
        return "free"
    if count > 5:
        return "very-busy"
    if count > 2:
        return "busy"
    return "light"


def upcoming_summary(
    occurrences: list[Occurrence],
    now: datetime,
    tz: tzinfo,
    limit: int = UPCOMING_LIMIT,
) -> dict[str, Any]:
    """
    Summarize the next occurrences, grouped by local calendar day.

    `occurrences` is expected to be sorted and already limited to the
    look-ahead window; only those starting at or after `now` are kept.
    """
    now = as_utc(now)
    upcoming = [occ for occ in occurrences if occ.start >= now][:limit]

    by_day: dict[str, list[Occurrence]] = {}
    for occ in upcoming:
        key = occurrence_date(occ, tz).isoformat()
        by_day.setdefault(key, []).append(occ)

    today_key = local_date(now, tz).isoformat()
    items = []
    for occ in upcoming:
        item = _brief(occ)
        item["daysUntil"] = (occ.start - now).days
        items.append(item)

    return {
        "upcomingEvents": items,
        "summary": {
            "totalUpcomingEvents": len(upcoming),
            "nextEventTitle": upcoming[0].event.title if upcoming else None,
            "nextEventTime": format_rfc3339(upcoming[0].start) if upcoming else None,
            "busyDays": len(by_day),
            "hasEventsToday": today_key in by_day,
            "weekSummary": [
                {
                    "date": day,
                    "eventCount": len(day_events),
                    "summary": f"{len(day_events)} event{'s' if len(day_events) > 1 else ''}",
                }
                for day, day_events in by_day.items()
            ],
        },
    }


def occurrence_status(occ: Occurrence, now: datetime) -> str:
    if occ.end <= now:
        return "completed"
    if occ.start <= now:
        return "in-progress"
    return "upcoming"


def today_summary(
    occurrences: list[Occurrence], now: datetime, tz: tzinfo
) -> dict[str, Any]:
    """
    Today's schedule: all-day events first, then timed events by start, with
    the current or next timed event and an overall day load.
    """
    now = as_utc(now)

    ordered = sorted(occurrences, key=lambda occ: (not occ.event.all_day, occ.start))
    timed = [occ for occ in ordered if not occ.event.all_day]
    all_day = [occ for occ in ordered if occ.event.all_day]

    current: Optional[Occurrence] = None
    following: Optional[Occurrence] = None
    for occ in timed:
        if occ.end > now:
            if occ.start <= now:
                current = current or occ
            else:
                following = occ
                break

    events = []
    for occ in ordered:
        item = _brief(occ)
        item["duration"] = _minutes(occ.end - occ.start)
        item["status"] = occurrence_status(occ, now)
        events.append(item)

    return {
        "todaySchedule": {
            "date": local_date(now, tz).isoformat(),
            "events": events,
            "allDayEvents": [occ.event.title for occ in all_day],
        },
        "summary": {
            "totalEvents": len(ordered),
            "timedEvents": len(timed),
            "allDayEvents": len(all_day),
            "currentEvent": (
                {"title": current.event.title, "endsAt": format_rfc3339(current.end)}
                if current
                else None
            ),
            "nextEvent": (
                {
                    "title": following.event.title,
                    "startsAt": format_rfc3339(following.start),
                    "minutesUntil": _minutes(following.start - now),
                }
                if following
                else None
            ),
            "dayStatus": day_status(len(ordered)),
        },
    }


def availability_summary(
    conflicts: list[Occurrence], start: datetime, end: datetime
) -> dict[str, Any]:
    return {
        "available": not conflicts,
        "conflicts": [_brief(occ) for occ in conflicts],
        "requestedTimeSlot": {
            "startTime": format_rfc3339(start),
            "endTime": format_rfc3339(end),
            "duration": _minutes(as_utc(end) - as_utc(start)),
        },
    }
