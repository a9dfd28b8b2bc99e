# Database operations for the calendar service
# Registry, event store, recurrence edits, free/busy, ICS and RSVP persistence

import logging
from datetime import datetime, timedelta, tzinfo
from types import SimpleNamespace
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select, and_, or_, func
from sqlalchemy.exc import IntegrityError

from .schema import (
    Calendar,
    ContextMember,
    Event,
    EventAttendee,
    EventComment,
    EventReminder,
    ContextType,
    ContextRole,
    AttendeeResponse,
    ReminderMethod,
)
from ..core.utils import (
    generate_id,
    as_utc,
    to_storage,
    utc_now,
    start_of_day,
    resolve_timezone,
    validate_window,
    intersects,
)
from ..core.errors import (
    CalendarNotFoundError,
    EventNotFoundError,
    CommentNotFoundError,
    ValidationError,
    RequiredFieldError,
    ForbiddenError,
    ConflictError,
    VersionMismatchError,
)
from ..core.recurrence import (
    Occurrence,
    expand_events,
    expand_series,
    is_occurrence,
    parse_rule,
    wall_clock_shift,
)
from ..core.availability import Interval, busy_intervals, merge_intervals, find_conflicts
from ..core import agenda, ics
from ..core.collaborators import AllowAllModuleGate, InvitationDispatcher, ModuleGate

logger = logging.getLogger(__name__)


EDIT_MODES = ("THIS", "SERIES")
SEARCH_LIMIT = 100

DEFAULT_CALENDAR_NAMES = {
    ContextType.PERSONAL: "My Calendar",
    ContextType.BUSINESS: "Business Calendar",
    ContextType.HOUSEHOLD: "Household Calendar",
}

# Fields a detached exception may override
EXCEPTION_FIELDS = (
    "title",
    "description",
    "location",
    "online_meeting_link",
    "start_at",
    "end_at",
    "all_day",
    "timezone",
)

# Base fields that decide where a series' occurrences fall
SERIES_TIMING_FIELDS = (
    "start_at",
    "all_day",
    "timezone",
    "recurrence_rule",
    "recurrence_end_at",
)


# ============================================================================
# CONTEXT ACCESS
# ============================================================================


def _context_type(value: Any) -> ContextType:
    if isinstance(value, ContextType):
        return value
    try:
        return ContextType(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid contextType: {value}", field="contextType")


def add_context_member(
    session: Session,
    context_type: Any,
    context_id: str,
    user_id: str,
    role: ContextRole = ContextRole.MEMBER,
) -> ContextMember:
    """Insert or update a membership row (membership read model)."""
    ctype = _context_type(context_type)
    member = session.execute(
        select(ContextMember).where(
            ContextMember.context_type == ctype,
            ContextMember.context_id == context_id,
            ContextMember.user_id == user_id,
        )
    ).scalar_one_or_none()
    if member is None:
        member = ContextMember(
            context_type=ctype, context_id=context_id, user_id=user_id, role=role
        )
        session.add(member)
    else:
        member.role = role
    session.flush()
    return member


def get_context_role(
    session: Session,
    principal_id: str,
    context_type: Any,
    context_id: str,
) -> Optional[ContextRole]:
    """A principal owns its personal context; other contexts need a membership."""
    ctype = _context_type(context_type)
    if ctype == ContextType.PERSONAL and context_id == principal_id:
        return ContextRole.OWNER
    return session.execute(
        select(ContextMember.role).where(
            ContextMember.context_type == ctype,
            ContextMember.context_id == context_id,
            ContextMember.user_id == principal_id,
        )
    ).scalar_one_or_none()


def _can_write(role: Optional[ContextRole]) -> bool:
    return role is not None and role != ContextRole.VIEWER


def check_context_access(
    session: Session,
    principal_id: str,
    context_type: Any,
    context_id: str,
    write: bool = False,
) -> ContextRole:
    role = get_context_role(session, principal_id, context_type, context_id)
    if role is None:
        raise ForbiddenError(f"No access to context {_context_type(context_type).value}:{context_id}")
    if write and not _can_write(role):
        raise ForbiddenError("Read-only access to this context")
    return role


def list_principal_contexts(
    session: Session, principal_id: str
) -> list[tuple[ContextType, str, ContextRole]]:
    """Every context the principal belongs to, personal first."""
    contexts = [(ContextType.PERSONAL, principal_id, ContextRole.OWNER)]
    memberships = session.execute(
        select(ContextMember)
        .where(ContextMember.user_id == principal_id)
        .order_by(ContextMember.context_type, ContextMember.context_id)
    ).scalars().all()
    for member in memberships:
        if member.context_type == ContextType.PERSONAL and member.context_id == principal_id:
            continue
        contexts.append((member.context_type, member.context_id, member.role))
    return contexts


def _context_clause(contexts: Iterable[tuple[ContextType, str]]):
    clauses = [
        and_(Calendar.context_type == ctype, Calendar.context_id == cid)
        for ctype, cid in contexts
    ]
    return or_(*clauses) if clauses else None


# ============================================================================
# CALENDAR REGISTRY
# ============================================================================


def _demote_primary(
    session: Session, context_type: ContextType, context_id: str, keep_id: Optional[str]
) -> None:
    others = session.execute(
        select(Calendar).where(
            Calendar.context_type == context_type,
            Calendar.context_id == context_id,
            Calendar.is_primary == True,  # noqa: E712
        )
    ).scalars().all()
    for other in others:
        if other.id != keep_id:
            other.is_primary = False


def create_calendar(
    session: Session,
    principal_id: str,
    name: str,
    context_type: Any,
    context_id: str,
    color: Optional[str] = None,
    is_primary: bool = False,
    default_reminder_minutes: int = 0,
) -> Calendar:
    """Create a calendar in a context the principal can write to."""
    ctype = _context_type(context_type)
    if not name:
        raise RequiredFieldError("name")
    if not context_id:
        raise RequiredFieldError("contextId")
    if default_reminder_minutes < 0:
        raise ValidationError(
            "defaultReminderMinutes must be >= 0", field="defaultReminderMinutes"
        )

    role = get_context_role(session, principal_id, ctype, context_id)
    if not _can_write(role):
        raise ValidationError(
            f"Cannot create a calendar in context {ctype.value}:{context_id}",
            field="contextId",
        )

    calendar = Calendar(
        id=generate_id(),
        name=name,
        color=color,
        context_type=ctype,
        context_id=context_id,
        is_primary=is_primary,
        default_reminder_minutes=default_reminder_minutes,
    )
    if is_primary:
        _demote_primary(session, ctype, context_id, keep_id=calendar.id)
    session.add(calendar)
    session.flush()
    logger.info("Created calendar %s in %s:%s", calendar.id, ctype.value, context_id)
    return calendar


def get_calendar(session: Session, calendar_id: str) -> Calendar:
    calendar = session.get(Calendar, calendar_id)
    if calendar is None:
        raise CalendarNotFoundError(calendar_id)
    return calendar


def get_accessible_calendar(
    session: Session, principal_id: str, calendar_id: str, write: bool = False
) -> Calendar:
    calendar = get_calendar(session, calendar_id)
    check_context_access(
        session, principal_id, calendar.context_type, calendar.context_id, write=write
    )
    return calendar


def list_calendars(
    session: Session,
    principal_id: str,
    context_type: Optional[Any] = None,
    context_id: Optional[str] = None,
) -> list[Calendar]:
    """
    Calendars visible to the principal.

    With contextType and contextId the principal must belong to that context.
    With only contextType, every context of that type the principal belongs
    to is listed. With neither, all of the principal's contexts.
    """
    if context_id is not None and context_type is None:
        raise RequiredFieldError("contextType")

    if context_type is not None and context_id is not None:
        ctype = _context_type(context_type)
        check_context_access(session, principal_id, ctype, context_id)
        contexts = [(ctype, context_id)]
    else:
        contexts = [(ctype, cid) for ctype, cid, _ in list_principal_contexts(session, principal_id)]
        if context_type is not None:
            wanted = _context_type(context_type)
            contexts = [(ctype, cid) for ctype, cid in contexts if ctype == wanted]

    clause = _context_clause(contexts)
    if clause is None:
        return []
    return list(
        session.execute(
            select(Calendar)
            .where(clause)
            .order_by(
                Calendar.context_type,
                Calendar.context_id,
                Calendar.is_primary.desc(),
                Calendar.created_at,
                Calendar.id,
            )
        ).scalars().all()
    )


def update_calendar(
    session: Session,
    principal_id: str,
    calendar_id: str,
    name: Optional[str] = None,
    color: Optional[str] = None,
    is_primary: Optional[bool] = None,
    default_reminder_minutes: Optional[int] = None,
) -> Calendar:
    calendar = get_accessible_calendar(session, principal_id, calendar_id, write=True)

    if name is not None:
        calendar.name = name
    if color is not None:
        calendar.color = color
    if default_reminder_minutes is not None:
        if default_reminder_minutes < 0:
            raise ValidationError(
                "defaultReminderMinutes must be >= 0", field="defaultReminderMinutes"
            )
        calendar.default_reminder_minutes = default_reminder_minutes
    if is_primary is not None:
        if is_primary:
            _demote_primary(
                session, calendar.context_type, calendar.context_id, keep_id=calendar.id
            )
        calendar.is_primary = is_primary

    calendar.updated_at = utc_now().replace(tzinfo=None)
    session.flush()
    return calendar


def delete_calendar(
    session: Session,
    principal_id: str,
    calendar_id: str,
    cascade: bool = False,
) -> None:
    """Delete a calendar; system calendars are protected."""
    calendar = get_accessible_calendar(session, principal_id, calendar_id, write=True)

    if calendar.is_system or not calendar.is_deletable:
        raise ForbiddenError(f"Calendar {calendar_id} cannot be deleted")

    event_count = session.execute(
        select(func.count(Event.id)).where(Event.calendar_id == calendar_id)
    ).scalar_one()
    if event_count and not cascade:
        raise ConflictError(
            f"Calendar {calendar_id} still has {event_count} events; "
            "pass cascade=true to delete them"
        )

    session.delete(calendar)
    session.flush()
    logger.info("Deleted calendar %s (%d events)", calendar_id, event_count)


def auto_provision_calendar(
    session: Session,
    context_type: Any,
    context_id: str,
    name: Optional[str] = None,
    is_primary: bool = True,
    gate: Optional[ModuleGate] = None,
    principal_id: Optional[str] = None,
) -> tuple[Calendar, bool]:
    """
    Return the context's calendar, creating its system default if none exists.

    Returns:
        (calendar, created)
    """
    ctype = _context_type(context_type)
    if not context_id:
        raise RequiredFieldError("contextId")
    if principal_id is not None:
        check_context_access(session, principal_id, ctype, context_id)

    gate = gate or AllowAllModuleGate()
    if not gate.is_enabled(ctype.value, context_id):
        raise ForbiddenError(
            f"Calendar module is not enabled for {ctype.value}:{context_id}"
        )

    existing = session.execute(
        select(Calendar)
        .where(Calendar.context_type == ctype, Calendar.context_id == context_id)
        .order_by(Calendar.is_primary.desc(), Calendar.created_at, Calendar.id)
        .limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return existing, False

    calendar = Calendar(
        id=generate_id(),
        name=name or DEFAULT_CALENDAR_NAMES[ctype],
        context_type=ctype,
        context_id=context_id,
        is_primary=is_primary,
        is_system=True,
        is_deletable=False,
    )
    session.add(calendar)
    session.flush()
    logger.info("Auto-provisioned calendar %s for %s:%s", calendar.id, ctype.value, context_id)
    return calendar, True


def resolve_visible_calendar_ids(
    session: Session,
    principal_id: str,
    contexts: Optional[list[tuple[str, str]]] = None,
    calendar_ids: Optional[list[str]] = None,
) -> list[str]:
    """
    Calendar ids an event query may read.

    `contexts` (TYPE, id) pairs and explicit `calendar_ids` are unioned; each
    must be accessible to the principal. With no filter, every calendar the
    principal can see.
    """
    if not contexts and not calendar_ids:
        return [c.id for c in list_calendars(session, principal_id)]

    visible: list[str] = []
    if contexts:
        pairs = []
        for ctype, cid in contexts:
            ctype = _context_type(ctype)
            check_context_access(session, principal_id, ctype, cid)
            pairs.append((ctype, cid))
        visible.extend(
            session.execute(select(Calendar.id).where(_context_clause(pairs))).scalars().all()
        )

    for calendar_id in calendar_ids or []:
        get_accessible_calendar(session, principal_id, calendar_id)
        visible.append(calendar_id)

    return list(dict.fromkeys(visible))


# ============================================================================
# EVENT STORE
# ============================================================================


def _normalize_span(start: datetime, end: datetime, all_day: bool) -> tuple[datetime, datetime]:
    """Aware UTC bounds; all-day events snap to midnight date boundaries."""
    start, end = as_utc(start), as_utc(end)
    if end < start:
        raise ValidationError("endAt must not be before startAt", field="endAt")
    if all_day:
        start = start_of_day(start.date())
        end_day = start_of_day(end.date())
        if end > end_day:
            end_day += timedelta(days=1)
        end = max(end_day, start + timedelta(days=1))
    return start, end


def _normalize_rule(rule: Optional[str]) -> Optional[str]:
    if rule is None or not rule.strip():
        return None
    return parse_rule(rule).to_string()


def _attendee_key(user_id: Optional[str], email: Optional[str]) -> tuple[str, str]:
    return ("user", user_id) if user_id else ("email", (email or "").lower())


def _apply_attendees(event: Event, attendees: Iterable[Any]) -> list[str]:
    """
    Replace the attendee list, keeping responses of attendees that remain.

    Returns emails of newly added email attendees (invitation targets).
    """
    existing = {_attendee_key(a.user_id, a.email): a for a in event.attendees}
    kept: list[EventAttendee] = []
    new_emails: list[str] = []
    seen: set[tuple[str, str]] = set()

    for item in attendees:
        user_id = getattr(item, "user_id", None)
        email = getattr(item, "email", None)
        if bool(user_id) == bool(email):
            raise ValidationError(
                "Attendee needs exactly one of userId or email", field="attendees"
            )
        key = _attendee_key(user_id, email)
        if key in seen:
            raise ValidationError("Duplicate attendee", field="attendees")
        seen.add(key)

        if key in existing:
            kept.append(existing[key])
            continue

        response = getattr(item, "response", None) or AttendeeResponse.NEEDS_ACTION
        kept.append(
            EventAttendee(
                user_id=user_id,
                email=email.lower() if email else None,
                response=response,
                responded_at=(
                    None
                    if response == AttendeeResponse.NEEDS_ACTION
                    else to_storage(utc_now())
                ),
            )
        )
        if email:
            new_emails.append(email.lower())

    event.attendees = kept
    return new_emails


def _apply_reminders(event: Event, reminders: Iterable[Any]) -> None:
    replacement = []
    for item in reminders:
        minutes = getattr(item, "minutes_before", None)
        if minutes is None or minutes < 0:
            raise ValidationError("minutesBefore must be >= 0", field="reminders")
        replacement.append(
            EventReminder(
                minutes_before=minutes,
                method=getattr(item, "method", None) or ReminderMethod.APP,
            )
        )
    event.reminders = replacement


def get_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    return event


def get_accessible_event(
    session: Session, principal_id: str, event_id: str, write: bool = False
) -> Event:
    event = get_event(session, event_id)
    calendar = event.calendar
    check_context_access(
        session, principal_id, calendar.context_type, calendar.context_id, write=write
    )
    return event


def create_event(
    session: Session,
    principal_id: Optional[str],
    calendar_id: str,
    title: str,
    start_at: datetime,
    end_at: datetime,
    description: Optional[str] = None,
    location: Optional[str] = None,
    online_meeting_link: Optional[str] = None,
    all_day: bool = False,
    timezone: str = "UTC",
    recurrence_rule: Optional[str] = None,
    recurrence_end_at: Optional[datetime] = None,
    attendees: Optional[list[Any]] = None,
    reminders: Optional[list[Any]] = None,
    dispatcher: Optional[InvitationDispatcher] = None,
    check_access: bool = True,
) -> Event:
    """
    Create a standalone event or a series base.

    When `reminders` is None the calendar's defaultReminderMinutes applies.
    Email attendees are invited through `dispatcher` when one is given.
    """
    if check_access and principal_id is not None:
        calendar = get_accessible_calendar(session, principal_id, calendar_id, write=True)
    else:
        calendar = get_calendar(session, calendar_id)

    if not title:
        raise RequiredFieldError("title")
    resolve_timezone(timezone)
    start, end = _normalize_span(start_at, end_at, all_day)

    event = Event(
        id=generate_id(),
        calendar_id=calendar.id,
        title=title,
        description=description,
        location=location,
        online_meeting_link=online_meeting_link,
        start_at=to_storage(start),
        end_at=to_storage(end),
        all_day=all_day,
        timezone=timezone or "UTC",
        recurrence_rule=_normalize_rule(recurrence_rule),
        recurrence_end_at=to_storage(recurrence_end_at) if recurrence_end_at else None,
        created_by_id=principal_id,
        version=1,
    )
    if event.recurrence_end_at is not None and not event.recurrence_rule:
        raise ValidationError(
            "recurrenceEndAt requires a recurrenceRule", field="recurrenceEndAt"
        )

    new_emails = _apply_attendees(event, attendees or [])
    if reminders is not None:
        _apply_reminders(event, reminders)
    elif calendar.default_reminder_minutes:
        event.reminders = [
            EventReminder(
                minutes_before=calendar.default_reminder_minutes,
                method=ReminderMethod.APP,
            )
        ]

    session.add(event)
    session.flush()
    logger.info("Created event %s in calendar %s", event.id, calendar.id)

    if dispatcher is not None and new_emails:
        dispatcher.invite(event, new_emails)
    return event


def _check_version(event: Event, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != event.version:
        raise VersionMismatchError(event.id, expected_version, event.version)


def _parse_edit_mode(event: Event, edit_mode: Optional[str]) -> Optional[str]:
    # Standalone events have a single occurrence; any mode means the row itself
    if not event.recurrence_rule and event.parent_event_id is None:
        return None
    if edit_mode is None or edit_mode == "":
        raise ValidationError(
            "editMode (THIS or SERIES) is required for recurring events",
            field="editMode",
        )
    mode = edit_mode.strip().upper()
    if mode not in EDIT_MODES:
        raise ValidationError(
            f"Invalid editMode: {edit_mode}. Expected THIS or SERIES", field="editMode"
        )
    return mode


def _touch(event: Event) -> None:
    event.version = (event.version or 1) + 1
    event.updated_at = to_storage(utc_now())


def _apply_changes(
    event: Event,
    changes: dict[str, Any],
    allowed: Optional[Iterable[str]] = None,
) -> list[str]:
    """
    Apply a partial update to an event row. Returns newly invited emails.
    """
    if allowed is not None:
        rejected = sorted(set(changes) - set(allowed) - {"attendees", "reminders"})
        if rejected:
            raise ValidationError(
                f"Cannot change {', '.join(rejected)} on a single occurrence",
                field=rejected[0],
            )

    if "title" in changes and not changes["title"]:
        raise RequiredFieldError("title")
    for name in ("title", "description", "location", "online_meeting_link"):
        if name in changes:
            setattr(event, name, changes[name])

    if "timezone" in changes:
        resolve_timezone(changes["timezone"])
        event.timezone = changes["timezone"] or "UTC"

    if {"start_at", "end_at", "all_day"} & set(changes):
        all_day = changes.get("all_day")
        if all_day is None:
            all_day = event.all_day
        start = changes.get("start_at") or event.start_at
        end = changes.get("end_at") or event.end_at
        if "start_at" in changes and "end_at" not in changes:
            # Moving the start keeps the duration
            end = as_utc(start) + (as_utc(event.end_at) - as_utc(event.start_at))
        start, end = _normalize_span(start, end, all_day)
        event.start_at, event.end_at, event.all_day = to_storage(start), to_storage(end), all_day

    if "recurrence_rule" in changes:
        event.recurrence_rule = _normalize_rule(changes["recurrence_rule"])
    if "recurrence_end_at" in changes:
        value = changes["recurrence_end_at"]
        event.recurrence_end_at = to_storage(value) if value else None
    if event.recurrence_end_at is not None and not event.recurrence_rule:
        raise ValidationError(
            "recurrenceEndAt requires a recurrenceRule", field="recurrenceEndAt"
        )

    new_emails: list[str] = []
    if changes.get("attendees") is not None:
        new_emails = _apply_attendees(event, changes["attendees"])
    if changes.get("reminders") is not None:
        _apply_reminders(event, changes["reminders"])
    return new_emails


def find_exception(
    session: Session, base_id: str, occurrence_start: datetime
) -> Optional[Event]:
    return session.execute(
        select(Event).where(
            Event.parent_event_id == base_id,
            Event.occurrence_start_at == to_storage(occurrence_start),
        )
    ).scalar_one_or_none()


def _new_exception(base: Event, occurrence_start: datetime) -> Event:
    duration = as_utc(base.end_at) - as_utc(base.start_at)
    start = as_utc(occurrence_start)
    exception = Event(
        id=generate_id(),
        calendar_id=base.calendar_id,
        title=base.title,
        description=base.description,
        location=base.location,
        online_meeting_link=base.online_meeting_link,
        start_at=to_storage(start),
        end_at=to_storage(start + duration),
        all_day=base.all_day,
        timezone=base.timezone,
        parent_event_id=base.id,
        occurrence_start_at=to_storage(start),
        created_by_id=base.created_by_id,
        version=1,
    )
    exception.reminders = [
        EventReminder(minutes_before=r.minutes_before, method=r.method)
        for r in base.reminders
    ]
    exception.attendees = [
        EventAttendee(user_id=a.user_id, email=a.email, response=a.response)
        for a in base.attendees
    ]
    return exception


def upsert_exception(
    session: Session,
    base: Event,
    occurrence_start: datetime,
    changes: Optional[dict[str, Any]] = None,
    cancelled: bool = False,
) -> tuple[Event, list[str]]:
    """
    Create or update the detached exception for one occurrence of a series.

    The (parent, occurrenceStartAt) unique key makes retries converge on the
    same row; a concurrent insert is resolved by re-reading it.
    """
    if not base.recurrence_rule:
        raise ValidationError("Event is not recurring", field="editMode")
    if not is_occurrence(base, occurrence_start):
        raise ValidationError(
            "occurrenceStartAt is not an occurrence of this series",
            field="occurrenceStartAt",
        )

    exception = find_exception(session, base.id, occurrence_start)
    if exception is None:
        candidate = _new_exception(base, occurrence_start)
        try:
            with session.begin_nested():
                session.add(candidate)
            exception = candidate
        except IntegrityError:
            exception = find_exception(session, base.id, occurrence_start)
            if exception is None:
                raise
    else:
        _touch(exception)

    exception.cancelled = cancelled
    new_emails = _apply_changes(exception, changes or {}, allowed=EXCEPTION_FIELDS)
    session.flush()
    return exception, new_emails


def _timing(event: Event) -> SimpleNamespace:
    return SimpleNamespace(**{name: getattr(event, name) for name in SERIES_TIMING_FIELDS})


def _rekey_exceptions(session: Session, base: Event, before: SimpleNamespace) -> None:
    """
    Carry detached exceptions along a series edit that changed its timing.

    Every exception follows the local-time shift of the series start, span
    included. Exceptions whose shifted original start is not an occurrence
    of the edited series are deleted.
    """
    if vars(before) == vars(_timing(base)) or not base.exceptions:
        return
    if not base.recurrence_rule:
        dropped = len(base.exceptions)
        base.exceptions.clear()
        session.flush()
        logger.info("Dropped %d exceptions of event %s", dropped, base.id)
        return

    shift = wall_clock_shift(before, base)
    moves: list[tuple[Event, datetime, datetime]] = []
    seen: set[datetime] = set()
    for exception in list(base.exceptions):
        original = as_utc(exception.occurrence_start_at)
        target = shift(original)
        if target in seen or not is_occurrence(base, target):
            base.exceptions.remove(exception)
            continue
        seen.add(target)
        if target != original:
            moves.append((exception, original, target))

    if moves:
        # Clear the keys first so rows can trade places under the unique key
        for exception, _, _ in moves:
            exception.occurrence_start_at = None
        session.flush()
        for exception, original, target in moves:
            offset = target - original
            exception.occurrence_start_at = to_storage(target)
            exception.start_at = to_storage(as_utc(exception.start_at) + offset)
            exception.end_at = to_storage(as_utc(exception.end_at) + offset)
            _touch(exception)
    session.flush()
    logger.info(
        "Re-keyed exceptions of event %s (moved=%d, kept=%d)",
        base.id,
        len(moves),
        len(seen),
    )


def update_event(
    session: Session,
    principal_id: str,
    event_id: str,
    changes: dict[str, Any],
    edit_mode: Optional[str] = None,
    occurrence_start_at: Optional[datetime] = None,
    expected_version: Optional[int] = None,
    dispatcher: Optional[InvitationDispatcher] = None,
) -> Event:
    """
    Apply a partial update honoring recurrence edit semantics.

    - standalone: the row itself
    - base + SERIES: the base; exceptions follow a change of start or rule
    - base + THIS: the exception for `occurrence_start_at`, created on demand
    - exception + THIS: the exception row
    - exception + SERIES: the parent base

    Returns the row that was written.
    """
    event = get_accessible_event(session, principal_id, event_id, write=True)
    _check_version(event, expected_version)
    mode = _parse_edit_mode(event, edit_mode)

    if event.parent_event_id is not None and mode == "THIS":
        target = event
        new_emails = _apply_changes(target, changes, allowed=EXCEPTION_FIELDS)
        target.cancelled = False
        _touch(target)
    elif event.recurrence_rule and mode == "THIS":
        if occurrence_start_at is None:
            raise RequiredFieldError("occurrenceStartAt")
        target, new_emails = upsert_exception(session, event, occurrence_start_at, changes)
    else:
        target = event.parent if event.parent_event_id is not None else event
        before = _timing(target)
        new_emails = _apply_changes(target, changes)
        _touch(target)
        if before.recurrence_rule:
            _rekey_exceptions(session, target, before)

    session.flush()
    logger.info("Updated event %s (mode=%s, written=%s)", event_id, mode, target.id)
    if dispatcher is not None and new_emails:
        dispatcher.invite(target, new_emails)
    return target


def delete_event(
    session: Session,
    principal_id: str,
    event_id: str,
    edit_mode: Optional[str] = None,
    occurrence_start_at: Optional[datetime] = None,
) -> Optional[Event]:
    """
    Delete with recurrence semantics.

    THIS on a base materializes a cancelled exception; THIS on an exception
    cancels it; SERIES removes the base and, by cascade, its exceptions.
    Returns the cancelled exception for THIS deletes, else None.
    """
    event = get_accessible_event(session, principal_id, event_id, write=True)
    mode = _parse_edit_mode(event, edit_mode)

    if mode == "THIS":
        if event.parent_event_id is not None:
            event.cancelled = True
            _touch(event)
            session.flush()
            return event
        if occurrence_start_at is None:
            raise RequiredFieldError("occurrenceStartAt")
        exception, _ = upsert_exception(
            session, event, occurrence_start_at, cancelled=True
        )
        logger.info("Cancelled occurrence %s of event %s", occurrence_start_at, event_id)
        return exception

    target = event.parent if event.parent_event_id is not None else event
    session.delete(target)
    session.flush()
    logger.info("Deleted event %s", target.id)
    return None


# ============================================================================
# RANGE QUERIES
# ============================================================================


def _load_exceptions(session: Session, base_ids: list[str]) -> dict[str, list[Event]]:
    if not base_ids:
        return {}
    rows = session.execute(
        select(Event)
        .where(Event.parent_event_id.in_(base_ids))
        .order_by(Event.occurrence_start_at)
    ).scalars().all()
    grouped: dict[str, list[Event]] = {}
    for row in rows:
        grouped.setdefault(row.parent_event_id, []).append(row)
    return grouped


def _rows_in_range(
    session: Session, calendar_ids: list[str], start: datetime, end: datetime
) -> list[Event]:
    """Standalone events intersecting the window plus series bases starting before its end."""
    if not calendar_ids:
        return []
    s, e = to_storage(start), to_storage(end)
    standalone = and_(
        Event.recurrence_rule.is_(None),
        Event.start_at < e,
        or_(Event.end_at > s, Event.start_at >= s),
    )
    bases = and_(
        Event.recurrence_rule.is_not(None),
        Event.start_at < e,
    )
    return list(
        session.execute(
            select(Event)
            .options(selectinload(Event.attendees), selectinload(Event.reminders))
            .where(
                Event.calendar_id.in_(calendar_ids),
                Event.parent_event_id.is_(None),
                or_(standalone, bases),
            )
            .order_by(Event.start_at, Event.id)
        ).scalars().all()
    )


def list_events_in_range(
    session: Session, calendar_ids: list[str], start: datetime, end: datetime
) -> list[Occurrence]:
    """Concrete occurrences in [start, end), sorted by start."""
    start, end = as_utc(start), as_utc(end)
    validate_window(start, end)
    rows = _rows_in_range(session, calendar_ids, start, end)
    exceptions = _load_exceptions(session, [r.id for r in rows if r.recurrence_rule])
    return expand_events(rows, exceptions, start, end)


def _matches(event: Event, needle: str) -> bool:
    return any(
        needle in (value or "").lower()
        for value in (event.title, event.description, event.location)
    )


def search_events(
    session: Session,
    calendar_ids: list[str],
    text: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = SEARCH_LIMIT,
) -> list[Any]:
    """
    Case-insensitive substring search over title, description and location.

    With a window the expanded occurrences are searched and Occurrence
    objects returned; without one, stored rows (bases, standalone events and
    modified exceptions), newest start first, up to `limit`.
    """
    needle = (text or "").strip().lower()
    if not needle:
        raise RequiredFieldError("text")
    if (start is None) != (end is None):
        raise ValidationError("start and end must be given together", field="start")

    if start is not None and end is not None:
        occurrences = list_events_in_range(session, calendar_ids, start, end)
        return [occ for occ in occurrences if _matches(occ.event, needle)][:limit]

    if not calendar_ids:
        return []
    columns = (Event.title, Event.description, Event.location)
    return list(
        session.execute(
            select(Event)
            .where(
                Event.calendar_id.in_(calendar_ids),
                Event.cancelled == False,  # noqa: E712
                or_(
                    *[
                        func.lower(column).contains(needle, autoescape=True)
                        for column in columns
                    ]
                ),
            )
            .order_by(Event.start_at.desc(), Event.id)
            .limit(limit)
        ).scalars().all()
    )


# ============================================================================
# ATTENDEES / RSVP
# ============================================================================


def _upsert_attendee(
    session: Session,
    event: Event,
    response: AttendeeResponse,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
) -> EventAttendee:
    if user_id:
        clause = EventAttendee.user_id == user_id
    else:
        email = (email or "").lower()
        clause = EventAttendee.email == email

    attendee = session.execute(
        select(EventAttendee).where(EventAttendee.event_id == event.id, clause)
    ).scalar_one_or_none()
    if attendee is None:
        attendee = EventAttendee(
            event_id=event.id,
            user_id=user_id or None,
            email=None if user_id else email,
        )
        session.add(attendee)
    attendee.response = response
    attendee.responded_at = to_storage(utc_now())
    session.flush()
    return attendee


def _response(value: Any) -> AttendeeResponse:
    if isinstance(value, AttendeeResponse):
        return value
    try:
        return AttendeeResponse(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid response: {value}", field="response")


def rsvp_event(
    session: Session, principal_id: str, event_id: str, response: Any
) -> EventAttendee:
    """RSVP as the authenticated principal (attendee keyed by user id)."""
    event = get_event(session, event_id)
    is_invited = any(a.user_id == principal_id for a in event.attendees)
    if not is_invited:
        calendar = event.calendar
        check_context_access(session, principal_id, calendar.context_type, calendar.context_id)
    return _upsert_attendee(session, event, _response(response), user_id=principal_id)


def record_email_rsvp(
    session: Session, event_id: str, email: str, response: Any
) -> tuple[Event, EventAttendee]:
    """RSVP on behalf of an email invitee (token already verified)."""
    event = get_event(session, event_id)
    attendee = _upsert_attendee(session, event, _response(response), email=email)
    return event, attendee


# ============================================================================
# COMMENTS
# ============================================================================


def list_comments(session: Session, principal_id: str, event_id: str) -> list[EventComment]:
    event = get_accessible_event(session, principal_id, event_id)
    return list(event.comments)


def add_comment(
    session: Session, principal_id: str, event_id: str, content: str
) -> EventComment:
    event = get_accessible_event(session, principal_id, event_id)
    if not content or not content.strip():
        raise RequiredFieldError("content")
    comment = EventComment(
        id=generate_id(), event_id=event.id, user_id=principal_id, content=content
    )
    event.comments.append(comment)
    session.flush()
    return comment


def delete_comment(
    session: Session,
    principal_id: str,
    event_id: str,
    comment_id: str,
    principal_role: Optional[str] = None,
) -> None:
    """Authors delete their own comments; platform or context admins delete any."""
    event = get_accessible_event(session, principal_id, event_id)
    comment = session.get(EventComment, comment_id)
    if comment is None or comment.event_id != event.id:
        raise CommentNotFoundError(comment_id)

    if comment.user_id != principal_id and principal_role != "ADMIN":
        role = get_context_role(
            session, principal_id, event.calendar.context_type, event.calendar.context_id
        )
        if role not in (ContextRole.OWNER, ContextRole.ADMIN):
            raise ForbiddenError("Only the author or an admin can delete this comment")

    # Orphaned comments are deleted by the relationship cascade
    event.comments.remove(comment)
    session.flush()


# ============================================================================
# FREE/BUSY & CONFLICTS
# ============================================================================


def get_free_busy(
    session: Session,
    calendar_ids: list[str],
    start: datetime,
    end: datetime,
    merge: bool = False,
) -> list[Interval]:
    intervals = busy_intervals(list_events_in_range(session, calendar_ids, start, end))
    return merge_intervals(intervals) if merge else intervals


def check_conflicts(
    session: Session,
    calendar_ids: list[str],
    start: datetime,
    end: datetime,
    exclude_event_id: Optional[str] = None,
) -> list[Occurrence]:
    start, end = as_utc(start), as_utc(end)
    validate_window(start, end)
    occurrences = list_events_in_range(session, calendar_ids, start, end)
    return find_conflicts(occurrences, start, end, exclude_event_id=exclude_event_id)


# ============================================================================
# ICS IMPORT / EXPORT
# ============================================================================


def export_ics(
    session: Session,
    calendar_ids: list[str],
    domain: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    expand: bool = True,
) -> str:
    """
    Export as iCalendar text. With a window and `expand`, one VEVENT per
    occurrence; otherwise stored series with RRULE/EXDATE/RECURRENCE-ID.
    """
    if (start is None) != (end is None):
        raise ValidationError("start and end must be given together", field="start")

    if start is not None and end is not None and expand:
        return ics.export_occurrences(
            list_events_in_range(session, calendar_ids, start, end), domain
        )

    if start is not None and end is not None:
        rows = _rows_in_range(session, calendar_ids, as_utc(start), as_utc(end))
    elif calendar_ids:
        rows = list(
            session.execute(
                select(Event)
                .where(
                    Event.calendar_id.in_(calendar_ids),
                    Event.parent_event_id.is_(None),
                )
                .order_by(Event.start_at, Event.id)
            ).scalars().all()
        )
    else:
        rows = []
    exceptions = _load_exceptions(session, [r.id for r in rows if r.recurrence_rule])
    return ics.export_series(rows, exceptions, domain)


def _create_from_parsed(
    session: Session,
    principal_id: str,
    calendar_id: str,
    parsed: ics.ParsedEvent,
) -> Event:
    return create_event(
        session,
        principal_id,
        calendar_id,
        title=parsed.title,
        start_at=parsed.start,
        end_at=parsed.end,
        description=parsed.description,
        location=parsed.location,
        online_meeting_link=parsed.online_meeting_link,
        all_day=parsed.all_day,
        timezone=parsed.timezone,
        recurrence_rule=parsed.recurrence_rule,
        check_access=False,
    )


def import_ics_events(
    session: Session,
    principal_id: str,
    calendar_id: str,
    content: str,
) -> tuple[int, int, list[Event]]:
    """
    Import VEVENTs into a calendar.

    Series come first so that RECURRENCE-ID overrides and EXDATEs can attach
    to the base with the same UID. Overrides with no series in the document
    are imported as standalone events. Each item is isolated in a savepoint.

    Returns:
        (imported, failed, created events)
    """
    get_accessible_calendar(session, principal_id, calendar_id, write=True)
    parsed_calendar = ics.parse_ics(content)
    failed = parsed_calendar.failed
    created: list[Event] = []
    series_by_uid: dict[str, Event] = {}

    masters = [p for p in parsed_calendar.events if p.recurrence_id is None]
    overrides = [p for p in parsed_calendar.events if p.recurrence_id is not None]
    series_uids = {p.uid for p in masters if p.recurrence_rule}

    for parsed in masters:
        try:
            with session.begin_nested():
                event = _create_from_parsed(session, principal_id, calendar_id, parsed)
                for exdate in parsed.exdates if event.recurrence_rule else []:
                    if is_occurrence(event, exdate):
                        upsert_exception(session, event, exdate, cancelled=True)
                    else:
                        logger.debug("Ignoring EXDATE %s outside series %s", exdate, event.id)
        except (ValidationError, ValueError, IntegrityError) as e:
            failed += 1
            logger.warning("Failed to import VEVENT %s: %s", parsed.uid, e)
            continue
        created.append(event)
        if event.recurrence_rule and parsed.uid:
            series_by_uid[parsed.uid] = event

    for parsed in overrides:
        base = series_by_uid.get(parsed.uid)
        if base is None and parsed.uid in series_uids:
            # Its series failed to import
            failed += 1
            continue
        try:
            with session.begin_nested():
                if base is None:
                    event = _create_from_parsed(session, principal_id, calendar_id, parsed)
                else:
                    event, _ = upsert_exception(
                        session,
                        base,
                        parsed.recurrence_id,
                        changes={
                            "title": parsed.title,
                            "description": parsed.description,
                            "location": parsed.location,
                            "online_meeting_link": parsed.online_meeting_link,
                            "start_at": parsed.start,
                            "end_at": parsed.end,
                        },
                    )
        except (ValidationError, ValueError, IntegrityError) as e:
            failed += 1
            logger.warning("Failed to import override of %s: %s", parsed.uid, e)
            continue
        created.append(event)

    logger.info(
        "Imported %d events into calendar %s (%d failed)", len(created), calendar_id, failed
    )
    return len(created), failed, created


# ============================================================================
# SCHEDULE SUMMARIES
# ============================================================================


def upcoming_events(
    session: Session,
    calendar_ids: list[str],
    now: datetime,
    tz: tzinfo,
    days: int = agenda.UPCOMING_DAYS,
    limit: int = agenda.UPCOMING_LIMIT,
) -> dict[str, Any]:
    now = as_utc(now)
    occurrences = list_events_in_range(session, calendar_ids, now, now + timedelta(days=days))
    return agenda.upcoming_summary(occurrences, now, tz, limit=limit)


def today_schedule(
    session: Session, calendar_ids: list[str], now: datetime, tz: tzinfo
) -> dict[str, Any]:
    day_start, day_end = agenda.local_day_bounds(now, tz)
    today = agenda.local_date(as_utc(now), tz)
    # All-day events are dated in UTC, so look one day either side
    window = list_events_in_range(
        session, calendar_ids, day_start - timedelta(days=1), day_end + timedelta(days=1)
    )
    occurrences = [occ for occ in window if agenda.occurrence_date(occ, tz) == today]
    return agenda.today_summary(occurrences, now, tz)


def check_availability(
    session: Session, calendar_ids: list[str], start: datetime, end: datetime
) -> dict[str, Any]:
    conflicts = check_conflicts(session, calendar_ids, start, end)
    return agenda.availability_summary(conflicts, start, end)
