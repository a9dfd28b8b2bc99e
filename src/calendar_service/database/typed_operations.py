"""
Typed operations wrapper for the calendar service.

This module provides a class-based API over the raw operations functions,
encapsulating the session and returning pydantic models instead of ORM rows.
Handy for scripts, seeding and tests that do not go through HTTP.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from . import operations as ops
from .pydantic_schemas import (
    CalendarSchema,
    ContextMemberSchema,
    EventCommentSchema,
    EventSchema,
    ImportResultSchema,
    IntervalSchema,
    OccurrenceSchema,
)
from .schema import ContextRole


class CalendarOperations:
    """
    Typed operations for the calendar service, acting as one principal.

    Example usage:
        cal_ops = CalendarOperations(session, principal_id="user-1")

        calendar = cal_ops.create_calendar(
            name="Work",
            context_type="PERSONAL",
            context_id="user-1",
        )

        event = cal_ops.create_event(
            calendar_id=calendar.id,
            title="Standup",
            start_at=datetime(2024, 1, 1, 9, tzinfo=timezone.utc),
            end_at=datetime(2024, 1, 1, 9, 15, tzinfo=timezone.utc),
            recurrence_rule="FREQ=DAILY;COUNT=10",
        )
    """

    def __init__(self, session: Session, principal_id: str):
        """
        Args:
            session: SQLAlchemy session for database operations
            principal_id: User the operations act on behalf of
        """
        self.session = session
        self.principal_id = principal_id

    # ========================================================================
    # CONTEXTS & CALENDARS
    # ========================================================================

    def add_context_member(
        self,
        context_type: str,
        context_id: str,
        user_id: Optional[str] = None,
        role: ContextRole = ContextRole.MEMBER,
    ) -> ContextMemberSchema:
        result = ops.add_context_member(
            self.session,
            context_type,
            context_id,
            user_id or self.principal_id,
            role=role,
        )
        return ContextMemberSchema.model_validate(result)

    def create_calendar(
        self,
        name: str,
        context_type: str,
        context_id: str,
        *,
        color: Optional[str] = None,
        is_primary: bool = False,
        default_reminder_minutes: int = 0,
    ) -> CalendarSchema:
        result = ops.create_calendar(
            self.session,
            self.principal_id,
            name=name,
            context_type=context_type,
            context_id=context_id,
            color=color,
            is_primary=is_primary,
            default_reminder_minutes=default_reminder_minutes,
        )
        return CalendarSchema.model_validate(result)

    def list_calendars(
        self, context_type: Optional[str] = None, context_id: Optional[str] = None
    ) -> list[CalendarSchema]:
        results = ops.list_calendars(
            self.session, self.principal_id, context_type, context_id
        )
        return [CalendarSchema.model_validate(c) for c in results]

    def auto_provision_calendar(
        self, context_type: str, context_id: str, name: Optional[str] = None
    ) -> CalendarSchema:
        result, _ = ops.auto_provision_calendar(
            self.session,
            context_type,
            context_id,
            name=name,
            principal_id=self.principal_id,
        )
        return CalendarSchema.model_validate(result)

    def delete_calendar(self, calendar_id: str, cascade: bool = False) -> None:
        ops.delete_calendar(self.session, self.principal_id, calendar_id, cascade=cascade)

    # ========================================================================
    # EVENTS
    # ========================================================================

    def create_event(
        self,
        calendar_id: str,
        title: str,
        start_at: datetime,
        end_at: datetime,
        **fields: Any,
    ) -> EventSchema:
        """
        Create an event.

        Args:
            calendar_id: Target calendar
            title: Event title
            start_at: Start instant (aware or naive UTC)
            end_at: End instant
            **fields: Any other create_event keyword (recurrence_rule,
                all_day, timezone, attendees, reminders, ...)
        """
        result = ops.create_event(
            self.session,
            self.principal_id,
            calendar_id,
            title=title,
            start_at=start_at,
            end_at=end_at,
            **fields,
        )
        return EventSchema.model_validate(result)

    def get_event(self, event_id: str) -> EventSchema:
        result = ops.get_accessible_event(self.session, self.principal_id, event_id)
        return EventSchema.model_validate(result)

    def update_event(
        self,
        event_id: str,
        changes: dict[str, Any],
        *,
        edit_mode: Optional[str] = None,
        occurrence_start_at: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> EventSchema:
        result = ops.update_event(
            self.session,
            self.principal_id,
            event_id,
            changes,
            edit_mode=edit_mode,
            occurrence_start_at=occurrence_start_at,
            expected_version=expected_version,
        )
        return EventSchema.model_validate(result)

    def delete_event(
        self,
        event_id: str,
        *,
        edit_mode: Optional[str] = None,
        occurrence_start_at: Optional[datetime] = None,
    ) -> Optional[EventSchema]:
        result = ops.delete_event(
            self.session,
            self.principal_id,
            event_id,
            edit_mode=edit_mode,
            occurrence_start_at=occurrence_start_at,
        )
        return EventSchema.model_validate(result) if result else None

    def list_events(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: Optional[list[str]] = None,
    ) -> list[OccurrenceSchema]:
        """Expanded occurrences in [start, end) across visible calendars."""
        visible = ops.resolve_visible_calendar_ids(
            self.session, self.principal_id, calendar_ids=calendar_ids
        )
        results = ops.list_events_in_range(self.session, visible, start, end)
        return [OccurrenceSchema.model_validate(occ) for occ in results]

    def add_comment(self, event_id: str, content: str) -> EventCommentSchema:
        result = ops.add_comment(self.session, self.principal_id, event_id, content)
        return EventCommentSchema.model_validate(result)

    # ========================================================================
    # FREE/BUSY & ICS
    # ========================================================================

    def free_busy(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: Optional[list[str]] = None,
        merge: bool = False,
    ) -> list[IntervalSchema]:
        visible = ops.resolve_visible_calendar_ids(
            self.session, self.principal_id, calendar_ids=calendar_ids
        )
        results = ops.get_free_busy(self.session, visible, start, end, merge=merge)
        return [IntervalSchema.model_validate(i) for i in results]

    def import_ics(self, calendar_id: str, content: str) -> ImportResultSchema:
        imported, failed, events = ops.import_ics_events(
            self.session, self.principal_id, calendar_id, content
        )
        return ImportResultSchema(
            imported=imported,
            failed=failed,
            events=[EventSchema.model_validate(e) for e in events],
        )
