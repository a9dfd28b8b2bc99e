"""iCalendar export and import parsing."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from icalendar import Calendar as ICalendar

from calendar_service.core.errors import ValidationError
from calendar_service.core.ics import (
    DEFAULT_TITLE,
    PRODID,
    export_occurrences,
    export_series,
    parse_ics,
)
from calendar_service.core.recurrence import expand_series


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_event(**overrides):
    fields = dict(
        id="evt-1",
        title="Team Sync",
        description=None,
        location=None,
        online_meeting_link=None,
        start_at=utc(2024, 3, 1, 15),
        end_at=utc(2024, 3, 1, 16),
        all_day=False,
        timezone="UTC",
        recurrence_rule=None,
        recurrence_end_at=None,
        parent_event_id=None,
        occurrence_start_at=None,
        cancelled=False,
        updated_at=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def vevents(text: str):
    return list(ICalendar.from_ical(text).walk("VEVENT"))


def test_export_then_parse_preserves_event():
    event = make_event(description="Line one\nLine two", location="Room 4, floor 2")
    text = export_series([event], {}, "test.local")

    assert "BEGIN:VCALENDAR" in text
    assert "VERSION:2.0" in text
    assert PRODID in text
    assert "DTSTART:20240301T150000Z" in text
    assert "DESCRIPTION:Line one\\nLine two" in text

    parsed = parse_ics(text)
    assert parsed.failed == 0
    (item,) = parsed.events
    assert item.uid == "evt-1@test.local"
    assert item.title == "Team Sync"
    assert item.start == utc(2024, 3, 1, 15)
    assert item.end == utc(2024, 3, 1, 16)
    assert item.description == "Line one\nLine two"
    assert item.location == "Room 4, floor 2"


def test_series_export_carries_rrule_exdate_and_overrides():
    base = make_event(
        id="series-1",
        title="Standup",
        start_at=utc(2024, 1, 1, 9),
        end_at=utc(2024, 1, 1, 9, 15),
        recurrence_rule="FREQ=DAILY;COUNT=5",
    )
    cancelled = make_event(
        id="exc-a",
        title="Standup",
        parent_event_id="series-1",
        occurrence_start_at=utc(2024, 1, 2, 9),
        start_at=utc(2024, 1, 2, 9),
        end_at=utc(2024, 1, 2, 9, 15),
        cancelled=True,
    )
    moved = make_event(
        id="exc-b",
        title="Standup (late)",
        parent_event_id="series-1",
        occurrence_start_at=utc(2024, 1, 3, 9),
        start_at=utc(2024, 1, 3, 11),
        end_at=utc(2024, 1, 3, 11, 15),
    )

    text = export_series([base], {"series-1": [cancelled, moved]}, "test.local")
    components = vevents(text)

    assert len(components) == 2
    master, override = components
    assert master.get("RRULE").to_ical().decode() == "FREQ=DAILY;COUNT=5"
    assert "EXDATE:20240102T090000Z" in text
    assert str(override.get("UID")) == "series-1@test.local"
    assert override.get("RECURRENCE-ID").dt == utc(2024, 1, 3, 9)
    assert str(override.get("SUMMARY")) == "Standup (late)"


def test_expanded_export_has_one_vevent_per_occurrence():
    base = make_event(
        id="series-1",
        start_at=utc(2024, 1, 1, 9),
        end_at=utc(2024, 1, 1, 10),
        recurrence_rule="FREQ=WEEKLY",
    )
    occurrences = expand_series(base, [], utc(2024, 1, 1), utc(2024, 1, 31))
    text = export_occurrences(occurrences, "test.local")
    components = vevents(text)

    assert len(components) == 5
    assert "RRULE" not in text
    assert {str(c.get("UID")) for c in components} == {"series-1@test.local"}
    assert [c.get("RECURRENCE-ID").dt.day for c in components] == [1, 8, 15, 22, 29]


def test_all_day_events_use_date_values():
    event = make_event(
        start_at=utc(2024, 7, 4), end_at=utc(2024, 7, 5), all_day=True
    )
    text = export_series([event], {}, "test.local")
    assert "DTSTART;VALUE=DATE:20240704" in text

    (item,) = parse_ics(text).events
    assert item.all_day is True
    assert item.start == utc(2024, 7, 4)
    assert item.end == utc(2024, 7, 5)


def test_parse_reads_rules_overrides_and_counts_failures(import_doc):
    parsed = parse_ics(import_doc)

    assert parsed.failed == 1
    master, override, untitled = parsed.events

    assert master.recurrence_rule == "FREQ=WEEKLY;COUNT=4"
    assert master.end == utc(2024, 1, 1, 9, 30)
    assert master.exdates == [utc(2024, 1, 8, 9)]

    assert override.recurrence_id == utc(2024, 1, 15, 9)
    assert override.start == utc(2024, 1, 15, 13)

    assert untitled.title == DEFAULT_TITLE
    assert untitled.end == untitled.start


@pytest.mark.parametrize(
    "content",
    ["", "   ", "not a calendar at all"],
)
def test_unparseable_documents_are_rejected(content):
    with pytest.raises(ValidationError):
        parse_ics(content)
