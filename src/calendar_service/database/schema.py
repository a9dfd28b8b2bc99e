# Schema for the calendar service
# Calendars scoped to contexts, events with detached recurrence exceptions

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional
from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Enum,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .base import Base


# ============================================================================
# ENUMS
# ============================================================================


class ContextType(PyEnum):
    """Owning scope of a calendar."""

    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"
    HOUSEHOLD = "HOUSEHOLD"


class ContextRole(PyEnum):
    """Role of a user inside a business or household context."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"  # read-only


class AttendeeResponse(PyEnum):
    """Attendee RSVP status."""

    NEEDS_ACTION = "NEEDS_ACTION"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TENTATIVE = "TENTATIVE"


class ReminderMethod(PyEnum):
    """Reminder delivery method."""

    APP = "APP"
    EMAIL = "EMAIL"


class EventKind(PyEnum):
    """Variant of an event row, derived from its recurrence columns."""

    STANDALONE = "STANDALONE"
    SERIES_BASE = "SERIES_BASE"
    EXCEPTION = "EXCEPTION"


# ============================================================================
# MODELS
# ============================================================================


class ContextMember(Base):
    """
    Membership of a user in a business or household context.

    Maintained by the platform's membership service; the calendar service only
    reads it. Personal contexts need no row: a user always owns their own.
    """

    __tablename__ = "calendar_context_members"
    __table_args__ = (
        UniqueConstraint(
            "context_type", "context_id", "user_id", name="uq_context_member"
        ),
        Index("ix_context_member_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    context_type: Mapped[ContextType] = mapped_column(
        Enum(ContextType, name="context_type_enum"), nullable=False
    )
    context_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[ContextRole] = mapped_column(
        Enum(ContextRole, name="context_role_enum"),
        default=ContextRole.MEMBER,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Calendar(Base):
    """
    Calendar resource.
    At most one calendar per (context_type, context_id) is primary.
    """

    __tablename__ = "calendars"
    __table_args__ = (Index("ix_calendar_context", "context_type", "context_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    context_type: Mapped[ContextType] = mapped_column(
        Enum(ContextType, name="context_type_enum"), nullable=False
    )
    context_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_primary: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    is_system: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    is_deletable: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true"
    )
    default_reminder_minutes: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    events: Mapped[list["Event"]] = relationship(
        back_populates="calendar", cascade="all,delete-orphan"
    )


class Event(Base):
    """
    Event resource.

    One table holds three variants:
    - standalone: no recurrence_rule, no parent_event_id
    - series base: recurrence_rule set
    - detached exception: parent_event_id + occurrence_start_at set; overrides
      (or, when cancelled, removes) one occurrence of the parent series
    """

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint(
            "parent_event_id", "occurrence_start_at", name="uq_event_occurrence"
        ),
        Index("ix_event_calendar", "calendar_id"),
        Index("ix_event_start", "start_at"),
        Index("ix_event_end", "end_at"),
        Index("ix_event_parent", "parent_event_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    calendar_id: Mapped[str] = mapped_column(
        ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    online_meeting_link: Mapped[Optional[str]] = mapped_column(
        String(1000), nullable=True
    )

    # Naive UTC instants
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    all_day: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    timezone: Mapped[str] = mapped_column(
        String(100), default="UTC", server_default="UTC"
    )

    # Recurrence
    recurrence_rule: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    recurrence_end_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    parent_event_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=True
    )
    occurrence_start_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    cancelled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )

    created_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    calendar: Mapped["Calendar"] = relationship(back_populates="events")
    parent: Mapped[Optional["Event"]] = relationship(
        back_populates="exceptions", remote_side=[id]
    )
    exceptions: Mapped[list["Event"]] = relationship(
        back_populates="parent", cascade="all,delete-orphan"
    )
    attendees: Mapped[list["EventAttendee"]] = relationship(
        back_populates="event", cascade="all,delete-orphan"
    )
    reminders: Mapped[list["EventReminder"]] = relationship(
        back_populates="event", cascade="all,delete-orphan"
    )
    comments: Mapped[list["EventComment"]] = relationship(
        back_populates="event",
        cascade="all,delete-orphan",
        order_by="EventComment.created_at",
    )

    @property
    def kind(self) -> EventKind:
        if self.parent_event_id is not None:
            return EventKind.EXCEPTION
        if self.recurrence_rule:
            return EventKind.SERIES_BASE
        return EventKind.STANDALONE


class EventAttendee(Base):
    """
    Event attendee. Identified by user_id (platform user) or email (external
    invitee), never both.
    """

    __tablename__ = "calendar_event_attendees"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_attendee_user"),
        UniqueConstraint("event_id", "email", name="uq_event_attendee_email"),
        Index("ix_attendee_event", "event_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    response: Mapped[AttendeeResponse] = mapped_column(
        Enum(AttendeeResponse, name="attendee_response_enum"),
        default=AttendeeResponse.NEEDS_ACTION,
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    event: Mapped["Event"] = relationship(back_populates="attendees")


class EventReminder(Base):
    __tablename__ = "calendar_event_reminders"
    __table_args__ = (Index("ix_reminder_event", "event_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False
    )
    minutes_before: Mapped[int] = mapped_column(Integer, nullable=False)
    method: Mapped[ReminderMethod] = mapped_column(
        Enum(ReminderMethod, name="reminder_method_enum"),
        default=ReminderMethod.APP,
        nullable=False,
    )

    event: Mapped["Event"] = relationship(back_populates="reminders")


class EventComment(Base):
    __tablename__ = "calendar_event_comments"
    __table_args__ = (Index("ix_comment_event", "event_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[str] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    event: Mapped["Event"] = relationship(back_populates="comments")
