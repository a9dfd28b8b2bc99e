# Response serializers for the calendar service
# Converts ORM models and occurrences into camelCase JSON payloads

from enum import Enum
from typing import Any, Iterable, Optional

from ..database.schema import (
    Calendar,
    Event,
    EventAttendee,
    EventComment,
    EventReminder,
)
from .availability import Interval
from .recurrence import Occurrence
from .utils import format_rfc3339


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def _enum_value(val: Any) -> Any:
    """Extract value from enum if needed."""
    if isinstance(val, Enum):
        return val.value
    return val


def _without_none(d: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in d.items() if value is not None}


# ============================================================================
# CALENDAR SERIALIZERS
# ============================================================================


def serialize_calendar(calendar: Calendar) -> dict[str, Any]:
    return {
        "id": calendar.id,
        "name": calendar.name,
        "color": calendar.color,
        "contextType": _enum_value(calendar.context_type),
        "contextId": calendar.context_id,
        "isPrimary": calendar.is_primary,
        "isSystem": calendar.is_system,
        "isDeletable": calendar.is_deletable,
        "defaultReminderMinutes": calendar.default_reminder_minutes,
        "createdAt": format_rfc3339(calendar.created_at),
        "updatedAt": format_rfc3339(calendar.updated_at),
    }


def serialize_calendars(calendars: Iterable[Calendar]) -> list[dict[str, Any]]:
    return [serialize_calendar(c) for c in calendars]


# ============================================================================
# EVENT SERIALIZERS
# ============================================================================


def serialize_attendee(attendee: EventAttendee) -> dict[str, Any]:
    return _without_none(
        {
            "userId": attendee.user_id,
            "email": attendee.email,
            "response": _enum_value(attendee.response),
            "respondedAt": format_rfc3339(attendee.responded_at),
        }
    )


def serialize_reminder(reminder: EventReminder) -> dict[str, Any]:
    return {
        "minutesBefore": reminder.minutes_before,
        "method": _enum_value(reminder.method),
    }


def serialize_comment(comment: EventComment) -> dict[str, Any]:
    return {
        "id": comment.id,
        "eventId": comment.event_id,
        "userId": comment.user_id,
        "content": comment.content,
        "createdAt": format_rfc3339(comment.created_at),
        "updatedAt": format_rfc3339(comment.updated_at),
    }


def serialize_event(
    event: Event,
    include_comments: bool = False,
) -> dict[str, Any]:
    """
    Serialize a stored event row (standalone, series base or exception).

    Optional text fields are omitted when empty, matching what clients send.
    """
    result: dict[str, Any] = {
        "id": event.id,
        "calendarId": event.calendar_id,
        "kind": _enum_value(event.kind),
        "title": event.title,
        "startAt": format_rfc3339(event.start_at),
        "endAt": format_rfc3339(event.end_at),
        "allDay": event.all_day,
        "timezone": event.timezone,
        "cancelled": event.cancelled,
        "version": event.version,
        "createdAt": format_rfc3339(event.created_at),
        "updatedAt": format_rfc3339(event.updated_at),
    }
    result.update(
        _without_none(
            {
                "description": event.description,
                "location": event.location,
                "onlineMeetingLink": event.online_meeting_link,
                "recurrenceRule": event.recurrence_rule,
                "recurrenceEndAt": format_rfc3339(event.recurrence_end_at),
                "parentEventId": event.parent_event_id,
                "occurrenceStartAt": format_rfc3339(event.occurrence_start_at),
                "createdById": event.created_by_id,
            }
        )
    )
    result["attendees"] = [serialize_attendee(a) for a in event.attendees]
    result["reminders"] = [serialize_reminder(r) for r in event.reminders]
    if include_comments:
        result["comments"] = [serialize_comment(c) for c in event.comments]
    return result


def serialize_occurrence(occ: Occurrence) -> dict[str, Any]:
    """
    Serialize an occurrence: the describing row's fields plus the concrete
    occurrenceStartAt/occurrenceEndAt of this instance.

    For series occurrences `seriesId` names the base and `originalStartAt`
    the slot the occurrence was computed for, which is the value clients
    pass back as `occurrenceStartAt` for THIS edits.
    """
    result = serialize_event(occ.event)
    result["occurrenceStartAt"] = format_rfc3339(occ.start)
    result["occurrenceEndAt"] = format_rfc3339(occ.end)
    if occ.series_id is not None:
        result["seriesId"] = occ.series_id
        result["originalStartAt"] = format_rfc3339(occ.original_start)
    return result


def serialize_occurrences(occurrences: Iterable[Occurrence]) -> list[dict[str, Any]]:
    return [serialize_occurrence(occ) for occ in occurrences]


def serialize_interval(interval: Interval) -> dict[str, Any]:
    return {
        "startAt": format_rfc3339(interval.start),
        "endAt": format_rfc3339(interval.end),
    }


def serialize_import_result(
    imported: int, failed: int, events: Iterable[Event]
) -> dict[str, Any]:
    return {
        "imported": imported,
        "failed": failed,
        "events": [serialize_event(e) for e in events],
    }


def serialize_response(data: Any, message: Optional[str] = None) -> dict[str, Any]:
    """Success envelope: `{success: true, data}`."""
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body
