"""Calendar registry operations against a real SQLite database."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from calendar_service.core.collaborators import StaticModuleGate
from calendar_service.core.errors import (
    ConflictError,
    ForbiddenError,
    RequiredFieldError,
    ValidationError,
)
from calendar_service.database import (
    Calendar,
    ContextRole,
    ContextType,
    Event,
    add_context_member,
    auto_provision_calendar,
    create_calendar,
    create_event,
    delete_calendar,
    list_calendars,
    resolve_visible_calendar_ids,
    update_calendar,
)
from calendar_service.database.typed_operations import CalendarOperations

USER = "user-1"
OTHER = "user-2"
BIZ = "biz-1"


@pytest.fixture
def seeded(session):
    add_context_member(session, "BUSINESS", BIZ, USER, ContextRole.OWNER)
    add_context_member(session, "BUSINESS", BIZ, OTHER, ContextRole.VIEWER)
    return session


def primaries(session, context_type, context_id):
    return session.execute(
        select(Calendar.id).where(
            Calendar.context_type == context_type,
            Calendar.context_id == context_id,
            Calendar.is_primary == True,  # noqa: E712
        )
    ).scalars().all()


def test_second_primary_demotes_first(seeded):
    first = create_calendar(seeded, USER, "Work", "BUSINESS", BIZ, is_primary=True)
    second = create_calendar(seeded, USER, "Shifts", "BUSINESS", BIZ, is_primary=True)

    assert primaries(seeded, ContextType.BUSINESS, BIZ) == [second.id]
    assert first.is_primary is False


def test_promoting_on_update_demotes_other_primary(seeded):
    first = create_calendar(seeded, USER, "Work", "BUSINESS", BIZ, is_primary=True)
    second = create_calendar(seeded, USER, "Shifts", "BUSINESS", BIZ)

    update_calendar(seeded, USER, second.id, is_primary=True, color="#ff0000")

    assert primaries(seeded, ContextType.BUSINESS, BIZ) == [second.id]
    assert second.color == "#ff0000"
    assert first.is_primary is False


def test_create_requires_write_access_to_context(seeded):
    with pytest.raises(ValidationError):
        create_calendar(seeded, USER, "Elsewhere", "HOUSEHOLD", "house-9")
    with pytest.raises(ValidationError):
        create_calendar(seeded, OTHER, "Viewer cal", "BUSINESS", BIZ)
    with pytest.raises(ValidationError):
        create_calendar(seeded, USER, "Bad type", "GALAXY", "x")


def test_personal_context_belongs_to_principal(seeded):
    calendar = create_calendar(seeded, USER, "Mine", "personal", USER)
    assert calendar.context_type == ContextType.PERSONAL

    with pytest.raises(ValidationError):
        create_calendar(seeded, OTHER, "Not mine", "PERSONAL", USER)


def test_list_calendars_filters(seeded):
    personal = create_calendar(seeded, USER, "Mine", "PERSONAL", USER)
    work = create_calendar(seeded, USER, "Work", "BUSINESS", BIZ)

    assert {c.id for c in list_calendars(seeded, USER)} == {personal.id, work.id}
    assert [c.id for c in list_calendars(seeded, USER, "BUSINESS", BIZ)] == [work.id]
    assert [c.id for c in list_calendars(seeded, USER, "BUSINESS")] == [work.id]
    # A viewer sees business calendars but not the owner's personal ones
    assert [c.id for c in list_calendars(seeded, OTHER)] == [work.id]

    with pytest.raises(RequiredFieldError):
        list_calendars(seeded, USER, context_id=BIZ)
    with pytest.raises(ForbiddenError):
        list_calendars(seeded, USER, "HOUSEHOLD", "house-9")


def test_visible_calendar_ids_union_contexts_and_ids(seeded):
    personal = create_calendar(seeded, USER, "Mine", "PERSONAL", USER)
    work = create_calendar(seeded, USER, "Work", "BUSINESS", BIZ)

    visible = resolve_visible_calendar_ids(
        seeded, USER, contexts=[("BUSINESS", BIZ)], calendar_ids=[personal.id]
    )
    assert sorted(visible) == sorted([work.id, personal.id])

    with pytest.raises(ForbiddenError):
        resolve_visible_calendar_ids(seeded, OTHER, calendar_ids=[personal.id])


def test_auto_provision_is_idempotent(seeded):
    calendar, created = auto_provision_calendar(seeded, "HOUSEHOLD", "house-1")
    again, created_again = auto_provision_calendar(seeded, "HOUSEHOLD", "house-1")

    assert created is True
    assert created_again is False
    assert again.id == calendar.id
    assert calendar.name == "Household Calendar"
    assert calendar.is_system and not calendar.is_deletable and calendar.is_primary
    count = seeded.execute(
        select(func.count(Calendar.id)).where(Calendar.context_id == "house-1")
    ).scalar_one()
    assert count == 1


def test_auto_provision_returns_existing_primary(seeded):
    create_calendar(seeded, USER, "Other", "BUSINESS", BIZ)
    primary = create_calendar(seeded, USER, "Main", "BUSINESS", BIZ, is_primary=True)

    calendar, created = auto_provision_calendar(
        seeded, "BUSINESS", BIZ, principal_id=USER
    )
    assert created is False
    assert calendar.id == primary.id


def test_auto_provision_respects_module_gate(seeded):
    gate = StaticModuleGate({("BUSINESS", "biz-off")})
    with pytest.raises(ForbiddenError):
        auto_provision_calendar(seeded, "BUSINESS", "biz-off", gate=gate)


def test_system_calendars_cannot_be_deleted(seeded):
    calendar, _ = auto_provision_calendar(seeded, "PERSONAL", USER)
    with pytest.raises(ForbiddenError):
        delete_calendar(seeded, USER, calendar.id)


def test_delete_with_events_needs_cascade(seeded):
    calendar = create_calendar(seeded, USER, "Work", "BUSINESS", BIZ)
    create_event(
        seeded,
        USER,
        calendar.id,
        title="Review",
        start_at=datetime(2024, 1, 2, 10, tzinfo=timezone.utc),
        end_at=datetime(2024, 1, 2, 11, tzinfo=timezone.utc),
    )

    with pytest.raises(ConflictError):
        delete_calendar(seeded, USER, calendar.id)

    delete_calendar(seeded, USER, calendar.id, cascade=True)
    assert seeded.get(Calendar, calendar.id) is None
    assert seeded.execute(select(func.count(Event.id))).scalar_one() == 0


def test_viewer_cannot_delete(seeded):
    calendar = create_calendar(seeded, USER, "Work", "BUSINESS", BIZ)
    with pytest.raises(ForbiddenError):
        delete_calendar(seeded, OTHER, calendar.id)


def test_typed_operations(seeded):
    ops = CalendarOperations(seeded, principal_id=USER)

    calendar = ops.create_calendar("Work", "BUSINESS", BIZ, default_reminder_minutes=15)
    event = ops.create_event(
        calendar.id,
        "Standup",
        datetime(2024, 1, 1, 9, tzinfo=timezone.utc),
        datetime(2024, 1, 1, 9, 15, tzinfo=timezone.utc),
        recurrence_rule="FREQ=DAILY;COUNT=10",
    )

    assert event.kind.value == "SERIES_BASE"
    assert [r.minutes_before for r in event.reminders] == [15]
    occurrences = ops.list_events(
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 1, 4, tzinfo=timezone.utc),
    )
    assert len(occurrences) == 3
    assert [c.id for c in ops.list_calendars()] == [calendar.id]
