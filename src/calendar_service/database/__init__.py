# Database layer for the calendar service
from .base import Base
from .schema import (
    # Enums
    ContextType,
    ContextRole,
    AttendeeResponse,
    ReminderMethod,
    EventKind,
    # Models
    ContextMember,
    Calendar,
    Event,
    EventAttendee,
    EventReminder,
    EventComment,
)
from .operations import (
    # Contexts
    add_context_member,
    get_context_role,
    check_context_access,
    list_principal_contexts,
    # Calendars
    create_calendar,
    get_calendar,
    get_accessible_calendar,
    list_calendars,
    update_calendar,
    delete_calendar,
    auto_provision_calendar,
    resolve_visible_calendar_ids,
    # Events
    create_event,
    get_event,
    get_accessible_event,
    update_event,
    delete_event,
    upsert_exception,
    find_exception,
    list_events_in_range,
    search_events,
    # Attendees / RSVP
    rsvp_event,
    record_email_rsvp,
    # Comments
    list_comments,
    add_comment,
    delete_comment,
    # Free/busy
    get_free_busy,
    check_conflicts,
    # ICS
    export_ics,
    import_ics_events,
    # Schedule summaries
    upcoming_events,
    today_schedule,
    check_availability,
)
from .typed_operations import CalendarOperations
