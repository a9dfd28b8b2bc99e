"""Event storage, recurrence edits, RSVP persistence and ICS import/export."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from calendar_service.core.collaborators import InvitationDispatcher, RecordingNotifier
from calendar_service.core.errors import (
    ConflictError,
    ForbiddenError,
    RequiredFieldError,
    ValidationError,
    VersionMismatchError,
)
from calendar_service.database import (
    ContextRole,
    Event,
    EventAttendee,
    add_comment,
    add_context_member,
    check_conflicts,
    create_calendar,
    create_event,
    delete_comment,
    delete_event,
    export_ics,
    get_free_busy,
    import_ics_events,
    list_comments,
    list_events_in_range,
    record_email_rsvp,
    rsvp_event,
    search_events,
    update_event,
)
from calendar_service.database.pydantic_schemas import AttendeeInput

USER = "user-1"
OTHER = "user-2"
BIZ = "biz-1"
JAN_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
JAN_END = datetime(2024, 1, 31, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def calendar(session):
    add_context_member(session, "BUSINESS", BIZ, USER, ContextRole.OWNER)
    add_context_member(session, "BUSINESS", BIZ, OTHER, ContextRole.VIEWER)
    return create_calendar(
        session, USER, "Work", "BUSINESS", BIZ, default_reminder_minutes=10
    )


@pytest.fixture
def weekly(session, calendar):
    return create_event(
        session,
        USER,
        calendar.id,
        title="Weekly sync",
        start_at=utc(2024, 1, 1, 9),
        end_at=utc(2024, 1, 1, 10),
        recurrence_rule="FREQ=WEEKLY",
    )


def january(session, calendar):
    return list_events_in_range(session, [calendar.id], JAN_START, JAN_END)


def test_create_applies_default_reminder(weekly):
    assert [r.minutes_before for r in weekly.reminders] == [10]
    assert weekly.version == 1


def test_create_rejects_inverted_span(session, calendar):
    with pytest.raises(ValidationError):
        create_event(
            session,
            USER,
            calendar.id,
            title="Backwards",
            start_at=utc(2024, 1, 2, 10),
            end_at=utc(2024, 1, 2, 9),
        )


def test_create_rejects_bad_rule_and_viewer(session, calendar):
    with pytest.raises(ValidationError):
        create_event(
            session,
            USER,
            calendar.id,
            title="Hourly",
            start_at=utc(2024, 1, 2, 10),
            end_at=utc(2024, 1, 2, 11),
            recurrence_rule="FREQ=HOURLY",
        )
    with pytest.raises(ForbiddenError):
        create_event(
            session,
            OTHER,
            calendar.id,
            title="Viewer event",
            start_at=utc(2024, 1, 2, 10),
            end_at=utc(2024, 1, 2, 11),
        )


def test_create_rejects_out_of_range_weekday_ordinal(session, calendar):
    with pytest.raises(ValidationError) as excinfo:
        create_event(
            session,
            USER,
            calendar.id,
            title="Never",
            start_at=utc(2024, 1, 1, 9),
            end_at=utc(2024, 1, 1, 10),
            recurrence_rule="FREQ=MONTHLY;BYDAY=0MO",
        )
    assert excinfo.value.location == "recurrenceRule"


def test_weekly_series_lists_five_january_occurrences(session, calendar, weekly):
    occurrences = january(session, calendar)
    assert [occ.start.day for occ in occurrences] == [1, 8, 15, 22, 29]
    assert all(occ.series_id == weekly.id for occ in occurrences)


def test_delete_this_occurrence_is_idempotent(session, calendar, weekly):
    first = delete_event(
        session, USER, weekly.id, edit_mode="THIS", occurrence_start_at=utc(2024, 1, 15, 9)
    )
    again = delete_event(
        session, USER, weekly.id, edit_mode="THIS", occurrence_start_at=utc(2024, 1, 15, 9)
    )

    assert first.id == again.id
    assert first.cancelled is True
    assert [occ.start.day for occ in january(session, calendar)] == [1, 8, 22, 29]
    count = session.execute(
        select(func.count(Event.id)).where(Event.parent_event_id == weekly.id)
    ).scalar_one()
    assert count == 1


def test_update_this_moves_one_occurrence(session, calendar, weekly):
    exception = update_event(
        session,
        USER,
        weekly.id,
        {"start_at": utc(2024, 1, 22, 14), "end_at": utc(2024, 1, 22, 15)},
        edit_mode="THIS",
        occurrence_start_at=utc(2024, 1, 22, 9),
    )
    # A second edit of the same occurrence reuses the exception row
    again = update_event(
        session,
        USER,
        weekly.id,
        {"title": "Moved sync"},
        edit_mode="this",
        occurrence_start_at=utc(2024, 1, 22, 9),
    )

    assert again.id == exception.id
    assert exception.parent_event_id == weekly.id
    assert [r.minutes_before for r in exception.reminders] == [10]

    by_day = {occ.start.day: occ for occ in january(session, calendar)}
    assert sorted(by_day) == [1, 8, 15, 22, 29]
    assert by_day[22].start == utc(2024, 1, 22, 14)
    assert by_day[22].event.title == "Moved sync"
    assert by_day[15].event.title == "Weekly sync"


def test_update_this_rejects_non_occurrence_and_series_fields(session, weekly):
    with pytest.raises(ValidationError):
        update_event(
            session,
            USER,
            weekly.id,
            {"title": "Nope"},
            edit_mode="THIS",
            occurrence_start_at=utc(2024, 1, 22, 10),
        )
    with pytest.raises(ValidationError):
        update_event(
            session,
            USER,
            weekly.id,
            {"recurrence_rule": "FREQ=DAILY"},
            edit_mode="THIS",
            occurrence_start_at=utc(2024, 1, 22, 9),
        )
    with pytest.raises(RequiredFieldError):
        update_event(session, USER, weekly.id, {"title": "Nope"}, edit_mode="THIS")


@pytest.mark.parametrize("mode", [None, "", "ALL"])
def test_recurring_edits_need_a_valid_mode(session, weekly, mode):
    with pytest.raises(ValidationError):
        update_event(session, USER, weekly.id, {"title": "x"}, edit_mode=mode)


def test_series_edit_through_exception_updates_base(session, calendar, weekly):
    exception = delete_event(
        session, USER, weekly.id, edit_mode="THIS", occurrence_start_at=utc(2024, 1, 8, 9)
    )
    update_event(session, USER, exception.id, {"title": "Renamed"}, edit_mode="SERIES")

    assert weekly.title == "Renamed"
    assert weekly.version == 2
    # The cancellation survives a series edit
    assert [occ.start.day for occ in january(session, calendar)] == [1, 15, 22, 29]


def test_series_shift_keeps_cancelled_occurrence_cancelled(session, calendar, weekly):
    delete_event(
        session, USER, weekly.id, edit_mode="THIS", occurrence_start_at=utc(2024, 1, 15, 9)
    )
    update_event(
        session, USER, weekly.id, {"start_at": utc(2024, 1, 1, 10)}, edit_mode="SERIES"
    )

    occurrences = january(session, calendar)
    assert [occ.start.day for occ in occurrences] == [1, 8, 22, 29]
    assert all(occ.start.hour == 10 for occ in occurrences)


def test_series_shift_carries_moved_occurrence(session, calendar, weekly):
    moved = update_event(
        session,
        USER,
        weekly.id,
        {"start_at": utc(2024, 1, 22, 14), "end_at": utc(2024, 1, 22, 15)},
        edit_mode="THIS",
        occurrence_start_at=utc(2024, 1, 22, 9),
    )
    update_event(
        session, USER, weekly.id, {"start_at": utc(2024, 1, 1, 10)}, edit_mode="SERIES"
    )

    occurrences = january(session, calendar)
    assert [occ.start.day for occ in occurrences] == [1, 8, 15, 22, 29]
    (jan22,) = [occ for occ in occurrences if occ.start.day == 22]
    assert jan22.event.id == moved.id
    assert jan22.start == utc(2024, 1, 22, 15)
    assert jan22.original_start == utc(2024, 1, 22, 10)


def test_rule_change_drops_exceptions_off_the_series(session, calendar, weekly):
    delete_event(
        session, USER, weekly.id, edit_mode="THIS", occurrence_start_at=utc(2024, 1, 15, 9)
    )
    update_event(
        session,
        USER,
        weekly.id,
        {"recurrence_rule": "FREQ=WEEKLY;BYDAY=TU"},
        edit_mode="SERIES",
    )

    assert [occ.start.day for occ in january(session, calendar)] == [2, 9, 16, 23, 30]
    count = session.execute(
        select(func.count(Event.id)).where(Event.parent_event_id == weekly.id)
    ).scalar_one()
    assert count == 0


def test_edit_mode_is_ignored_for_standalone_events(session, calendar):
    event = create_event(
        session,
        USER,
        calendar.id,
        title="Review",
        start_at=utc(2024, 1, 2, 10),
        end_at=utc(2024, 1, 2, 11),
    )
    update_event(session, USER, event.id, {"location": "Room 1"}, edit_mode="THIS")
    assert event.location == "Room 1"

    assert delete_event(session, USER, event.id, edit_mode="THIS") is None
    assert january(session, calendar) == []
    assert session.execute(select(func.count(Event.id))).scalar_one() == 0


def test_stale_version_is_rejected(session, calendar):
    event = create_event(
        session,
        USER,
        calendar.id,
        title="Review",
        start_at=utc(2024, 1, 2, 10),
        end_at=utc(2024, 1, 2, 11),
    )
    update_event(session, USER, event.id, {"location": "Room 1"}, expected_version=1)
    assert event.version == 2

    with pytest.raises(VersionMismatchError) as excinfo:
        update_event(session, USER, event.id, {"location": "Room 2"}, expected_version=1)
    assert isinstance(excinfo.value, ConflictError)
    assert event.location == "Room 1"


def test_moving_start_keeps_duration(session, calendar):
    event = create_event(
        session,
        USER,
        calendar.id,
        title="Review",
        start_at=utc(2024, 1, 2, 10),
        end_at=utc(2024, 1, 2, 11, 30),
    )
    update_event(session, USER, event.id, {"start_at": utc(2024, 1, 3, 8)})

    (occ,) = list_events_in_range(session, [calendar.id], JAN_START, JAN_END)
    assert occ.start == utc(2024, 1, 3, 8)
    assert occ.end == utc(2024, 1, 3, 9, 30)


def test_delete_series_removes_exceptions(session, calendar, weekly):
    delete_event(
        session, USER, weekly.id, edit_mode="THIS", occurrence_start_at=utc(2024, 1, 8, 9)
    )
    delete_event(session, USER, weekly.id, edit_mode="SERIES")

    assert january(session, calendar) == []
    assert session.execute(select(func.count(Event.id))).scalar_one() == 0


def test_email_attendees_are_invited_once(session, calendar):
    notifier = RecordingNotifier()
    dispatcher = InvitationDispatcher(notifier, "secret", "https://cal.example.com")
    event = create_event(
        session,
        USER,
        calendar.id,
        title="Dinner",
        start_at=utc(2024, 1, 5, 18),
        end_at=utc(2024, 1, 5, 20),
        attendees=[AttendeeInput(email="Guest@Example.com"), AttendeeInput(user_id=OTHER)],
        dispatcher=dispatcher,
    )
    assert [i.email for i in notifier.sent] == ["guest@example.com"]

    # Keeping the same guest does not re-invite
    update_event(
        session,
        USER,
        event.id,
        {"attendees": [AttendeeInput(email="guest@example.com"), AttendeeInput(email="new@example.com")]},
        dispatcher=dispatcher,
    )
    assert [i.email for i in notifier.sent] == ["guest@example.com", "new@example.com"]

    with pytest.raises(ValidationError):
        update_event(
            session,
            USER,
            event.id,
            {"attendees": [AttendeeInput(email="a@example.com"), AttendeeInput(email="A@example.com")]},
        )


def test_rsvp_upserts_a_single_attendee(session, calendar):
    event = create_event(
        session,
        USER,
        calendar.id,
        title="Dinner",
        start_at=utc(2024, 1, 5, 18),
        end_at=utc(2024, 1, 5, 20),
    )

    rsvp_event(session, OTHER, event.id, "TENTATIVE")
    attendee = rsvp_event(session, OTHER, event.id, "accepted")
    record_email_rsvp(session, event.id, "guest@example.com", "DECLINED")
    _, guest = record_email_rsvp(session, event.id, "GUEST@example.com", "ACCEPTED")

    rows = session.execute(
        select(EventAttendee).where(EventAttendee.event_id == event.id)
    ).scalars().all()
    assert len(rows) == 2
    assert attendee.response.value == "ACCEPTED"
    assert guest.response.value == "ACCEPTED"
    assert guest.responded_at is not None

    with pytest.raises(ValidationError):
        rsvp_event(session, OTHER, event.id, "MAYBE")
    with pytest.raises(ForbiddenError):
        rsvp_event(session, "stranger", event.id, "ACCEPTED")


def test_search_with_and_without_window(session, calendar, weekly):
    create_event(
        session,
        USER,
        calendar.id,
        title="Lunch",
        location="Sync Café",
        start_at=utc(2024, 1, 3, 12),
        end_at=utc(2024, 1, 3, 13),
    )

    stored = search_events(session, [calendar.id], "SYNC")
    assert {e.title for e in stored} == {"Weekly sync", "Lunch"}

    windowed = search_events(session, [calendar.id], "weekly", JAN_START, utc(2024, 1, 10))
    assert [occ.start.day for occ in windowed] == [1, 8]

    with pytest.raises(RequiredFieldError):
        search_events(session, [calendar.id], "  ")


def test_free_busy_and_conflicts(session, calendar, weekly):
    create_event(
        session,
        USER,
        calendar.id,
        title="Overlap",
        start_at=utc(2024, 1, 8, 9, 30),
        end_at=utc(2024, 1, 8, 11),
    )
    day_start, day_end = utc(2024, 1, 8), utc(2024, 1, 9)

    raw = get_free_busy(session, [calendar.id], day_start, day_end)
    merged = get_free_busy(session, [calendar.id], day_start, day_end, merge=True)
    assert len(raw) == 2
    assert [(i.start, i.end) for i in merged] == [(utc(2024, 1, 8, 9), utc(2024, 1, 8, 11))]

    conflicts = check_conflicts(
        session, [calendar.id], utc(2024, 1, 8, 9), utc(2024, 1, 8, 10)
    )
    assert len(conflicts) == 2
    excluded = check_conflicts(
        session,
        [calendar.id],
        utc(2024, 1, 8, 9),
        utc(2024, 1, 8, 10),
        exclude_event_id=weekly.id,
    )
    assert [occ.event.title for occ in excluded] == ["Overlap"]
    assert check_conflicts(
        session, [calendar.id], utc(2024, 1, 8, 11), utc(2024, 1, 8, 12)
    ) == []


def test_comments_permissions(session, calendar, weekly):
    mine = add_comment(session, USER, weekly.id, "Agenda attached")
    theirs = add_comment(session, OTHER, weekly.id, "Can we move it?")

    assert {c.content for c in list_comments(session, OTHER, weekly.id)} == {
        "Agenda attached",
        "Can we move it?",
    }
    with pytest.raises(ForbiddenError):
        delete_comment(session, OTHER, weekly.id, mine.id)

    # Context owners may remove anyone's comment
    delete_comment(session, USER, weekly.id, theirs.id)
    assert [c.id for c in list_comments(session, USER, weekly.id)] == [mine.id]

    with pytest.raises(RequiredFieldError):
        add_comment(session, USER, weekly.id, "   ")


def test_import_attaches_exdates_and_overrides(session, calendar, import_doc):
    imported, failed, created = import_ics_events(session, USER, calendar.id, import_doc)

    assert (imported, failed) == (3, 1)
    assert {e.title for e in created} == {"Planning", "Planning (moved)", "Untitled event"}

    occurrences = january(session, calendar)
    assert [(occ.start.day, occ.start.hour) for occ in occurrences] == [
        (1, 9),
        (15, 13),
        (22, 9),
    ]


def test_export_then_import_round_trip(session, calendar):
    create_event(
        session,
        USER,
        calendar.id,
        title="Team Sync",
        start_at=utc(2024, 3, 1, 15),
        end_at=utc(2024, 3, 1, 16),
    )
    text = export_ics(session, [calendar.id], "test.local")

    copy = create_calendar(session, USER, "Copy", "BUSINESS", BIZ)
    imported, failed, (event,) = import_ics_events(session, USER, copy.id, text)

    assert (imported, failed) == (1, 0)
    (occ,) = list_events_in_range(session, [copy.id], utc(2024, 3, 1), utc(2024, 3, 2))
    assert occ.event.title == "Team Sync"
    assert occ.start == utc(2024, 3, 1, 15)
    assert occ.end == utc(2024, 3, 1, 16)
