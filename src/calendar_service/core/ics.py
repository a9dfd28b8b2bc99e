# iCalendar adapter
# RFC 5545 export of events/occurrences and import parsing, via icalendar

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from icalendar import Calendar as ICalendar, Event as ICalEvent, vRecur

from .errors import ValidationError
from .recurrence import Occurrence, parse_rule
from .utils import as_utc, generate_ical_uid, resolve_timezone, utc_now

logger = logging.getLogger(__name__)

PRODID = "-//Multi-context Calendar//Calendar Service//EN"
DEFAULT_TITLE = "Untitled event"


# ============================================================================
# EXPORT
# ============================================================================


def _new_calendar() -> ICalendar:
    cal = ICalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    return cal


def _ical_value(instant: datetime, all_day: bool) -> datetime | date:
    """DATE for all-day boundaries, UTC DATE-TIME otherwise."""
    instant = as_utc(instant)
    return instant.date() if all_day else instant


def _base_vevent(event: Any, uid: str, start: datetime, end: datetime) -> ICalEvent:
    vevent = ICalEvent()
    vevent.add("uid", uid)
    vevent.add("dtstamp", utc_now())
    vevent.add("dtstart", _ical_value(start, event.all_day))
    vevent.add("dtend", _ical_value(end, event.all_day))
    vevent.add("summary", event.title)
    if event.location:
        vevent.add("location", event.location)
    if event.description:
        vevent.add("description", event.description)
    if event.online_meeting_link:
        vevent.add("url", event.online_meeting_link)
    if event.updated_at:
        vevent.add("last-modified", as_utc(event.updated_at))
    return vevent


def _series_uid(event: Any, domain: str) -> str:
    root_id = event.parent_event_id or event.id
    return generate_ical_uid(root_id, domain)


def export_occurrences(occurrences: Iterable[Occurrence], domain: str) -> str:
    """
    One VEVENT per concrete occurrence.

    Occurrences of a series share the series UID and carry RECURRENCE-ID
    with their original start; no RRULE is emitted.
    """
    cal = _new_calendar()
    for occ in occurrences:
        vevent = _base_vevent(occ.event, _series_uid(occ.event, domain), occ.start, occ.end)
        if occ.is_recurring and occ.original_start is not None:
            vevent.add(
                "recurrence-id", _ical_value(occ.original_start, occ.event.all_day)
            )
        cal.add_component(vevent)
    return cal.to_ical().decode("utf-8")


def export_series(
    events: Iterable[Any],
    exceptions_by_parent: dict[str, list[Any]],
    domain: str,
) -> str:
    """
    Stored-shape export: series bases with RRULE and EXDATE, one
    RECURRENCE-ID VEVENT per modified exception, standalone events as-is.
    """
    cal = _new_calendar()
    for event in events:
        uid = generate_ical_uid(event.id, domain)
        vevent = _base_vevent(event, uid, event.start_at, event.end_at)

        if event.recurrence_rule:
            rule = parse_rule(event.recurrence_rule)
            vevent.add("rrule", vRecur.from_ical(rule.to_string()))

            exceptions = exceptions_by_parent.get(event.id, [])
            exdates = [
                _ical_value(exc.occurrence_start_at, event.all_day)
                for exc in exceptions
                if exc.cancelled
            ]
            if exdates:
                vevent.add("exdate", sorted(exdates))
            cal.add_component(vevent)

            for exc in exceptions:
                if exc.cancelled:
                    continue
                override = _base_vevent(exc, uid, exc.start_at, exc.end_at)
                override.add(
                    "recurrence-id", _ical_value(exc.occurrence_start_at, event.all_day)
                )
                cal.add_component(override)
            continue

        cal.add_component(vevent)
    return cal.to_ical().decode("utf-8")


# ============================================================================
# IMPORT
# ============================================================================


@dataclass
class ParsedEvent:
    """A VEVENT reduced to the fields the event store understands."""

    uid: Optional[str]
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    timezone: str = "UTC"
    description: Optional[str] = None
    location: Optional[str] = None
    online_meeting_link: Optional[str] = None
    recurrence_rule: Optional[str] = None
    recurrence_id: Optional[datetime] = None
    exdates: list[datetime] = field(default_factory=list)


@dataclass
class ParsedCalendar:
    events: list[ParsedEvent]
    failed: int = 0


def _tz_name(value: datetime) -> str:
    tzinfo = value.tzinfo
    if tzinfo is None:
        return "UTC"
    name = getattr(tzinfo, "key", None) or getattr(tzinfo, "zone", None)
    if not name:
        return "UTC"
    try:
        resolve_timezone(name)
    except ValidationError:
        return "UTC"
    return name


def _to_instant(value: datetime | date) -> datetime:
    """Convert an icalendar DATE/DATE-TIME value to an aware UTC instant."""
    if isinstance(value, datetime):
        # Floating times are read as UTC
        return as_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _text(component: ICalEvent, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _exdates(component: ICalEvent) -> list[datetime]:
    props = component.get("EXDATE")
    if props is None:
        return []
    if not isinstance(props, list):
        props = [props]
    instants = []
    for prop in props:
        for item in prop.dts:
            instants.append(_to_instant(item.dt))
    return instants


def parse_vevent(component: ICalEvent) -> ParsedEvent:
    """
    Map a VEVENT onto ParsedEvent.

    Raises:
        ValidationError: if DTSTART is missing or the times/rule are unusable
    """
    dtstart = component.get("DTSTART")
    if dtstart is None:
        raise ValidationError("VEVENT without DTSTART", field="icsContent")

    start_value = dtstart.dt
    all_day = not isinstance(start_value, datetime)
    start = _to_instant(start_value)

    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        end = _to_instant(dtend.dt)
    elif duration is not None:
        end = start + duration.dt
    elif all_day:
        end = start + timedelta(days=1)
    else:
        end = start

    if end < start:
        raise ValidationError("VEVENT ends before it starts", field="icsContent")

    recurrence_rule = None
    rrule_prop = component.get("RRULE")
    if rrule_prop is not None:
        if isinstance(rrule_prop, list):
            rrule_prop = rrule_prop[0]
        recurrence_rule = parse_rule(rrule_prop.to_ical().decode("utf-8")).to_string()

    recurrence_id = None
    recurrence_id_prop = component.get("RECURRENCE-ID")
    if recurrence_id_prop is not None:
        recurrence_id = _to_instant(recurrence_id_prop.dt)

    return ParsedEvent(
        uid=_text(component, "UID"),
        title=_text(component, "SUMMARY") or DEFAULT_TITLE,
        start=start,
        end=end,
        all_day=all_day,
        timezone="UTC" if all_day else _tz_name(start_value),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        online_meeting_link=_text(component, "URL"),
        recurrence_rule=recurrence_rule,
        recurrence_id=recurrence_id,
        exdates=_exdates(component),
    )


def parse_ics(content: str) -> ParsedCalendar:
    """
    Parse an iCalendar document.

    Malformed VEVENTs are skipped and counted in `failed`; a document that
    is not iCalendar at all raises ValidationError.
    """
    if not content or not content.strip():
        raise ValidationError("icsContent is empty", field="icsContent")

    try:
        cal = ICalendar.from_ical(content)
    except ValueError as e:
        raise ValidationError(f"Invalid iCalendar content: {e}", field="icsContent")

    if cal.name != "VCALENDAR":
        raise ValidationError(
            "iCalendar content must contain a VCALENDAR", field="icsContent"
        )

    result = ParsedCalendar(events=[])
    for component in cal.walk("VEVENT"):
        try:
            result.events.append(parse_vevent(component))
        except (ValidationError, ValueError, TypeError, AttributeError) as e:
            result.failed += 1
            logger.warning(
                "Skipping malformed VEVENT %s: %s", component.get("UID"), e
            )
    return result
