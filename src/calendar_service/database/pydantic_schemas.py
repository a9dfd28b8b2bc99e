from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..core.utils import as_utc, parse_rfc3339
from .schema import (
    AttendeeResponse,
    ContextRole,
    ContextType,
    EventKind,
    ReminderMethod,
)


def _parse_instant(value: Any) -> Any:
    if isinstance(value, str):
        return parse_rfc3339(value)
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


# ============================================================================
# REQUEST MODELS
# ============================================================================


class RequestModel(BaseModel):
    """camelCase JSON in, snake_case attributes out."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class CalendarCreate(RequestModel):
    name: str = Field(min_length=1, max_length=255)
    color: Optional[str] = Field(default=None, max_length=32)
    context_type: ContextType
    context_id: str = Field(min_length=1, max_length=255)
    is_primary: bool = False
    default_reminder_minutes: int = Field(default=0, ge=0)

    @field_validator("context_type", mode="before")
    @classmethod
    def normalize_context_type(cls, value: Any) -> Any:
        return _upper(value)


class CalendarUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    color: Optional[str] = Field(default=None, max_length=32)
    is_primary: Optional[bool] = None
    default_reminder_minutes: Optional[int] = Field(default=None, ge=0)


class AutoProvisionRequest(RequestModel):
    context_type: ContextType
    context_id: str = Field(min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    is_primary: bool = True

    @field_validator("context_type", mode="before")
    @classmethod
    def normalize_context_type(cls, value: Any) -> Any:
        return _upper(value)


class AttendeeInput(RequestModel):
    user_id: Optional[str] = None
    email: Optional[str] = Field(default=None, max_length=320)
    response: AttendeeResponse = AttendeeResponse.NEEDS_ACTION

    @field_validator("response", mode="before")
    @classmethod
    def normalize_response(cls, value: Any) -> Any:
        return _upper(value)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if "@" not in value:
            raise ValueError(f"invalid email address: {value}")
        return value.lower()

    @model_validator(mode="after")
    def check_identity(self) -> "AttendeeInput":
        if bool(self.user_id) == bool(self.email):
            raise ValueError("attendee needs exactly one of userId or email")
        return self


class ReminderInput(RequestModel):
    minutes_before: int = Field(ge=0)
    method: ReminderMethod = ReminderMethod.APP

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, value: Any) -> Any:
        return _upper(value)


class EventFields(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    location: Optional[str] = Field(default=None, max_length=1000)
    online_meeting_link: Optional[str] = Field(default=None, max_length=1000)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    all_day: Optional[bool] = None
    timezone: Optional[str] = Field(default=None, max_length=100)
    recurrence_rule: Optional[str] = Field(default=None, max_length=500)
    recurrence_end_at: Optional[datetime] = None
    attendees: Optional[list[AttendeeInput]] = None
    reminders: Optional[list[ReminderInput]] = None

    @field_validator("start_at", "end_at", "recurrence_end_at", mode="before")
    @classmethod
    def parse_times(cls, value: Any) -> Any:
        return _parse_instant(value)

    def changes(self) -> dict[str, Any]:
        """Fields the client actually sent, keyed by attribute name."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class EventCreate(EventFields):
    calendar_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=500)
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    timezone: str = "UTC"


class EventUpdate(EventFields):
    version: Optional[int] = Field(default=None, ge=1)

    def changes(self) -> dict[str, Any]:
        changed = super().changes()
        changed.pop("version", None)
        return changed


class RsvpRequest(RequestModel):
    response: AttendeeResponse

    @field_validator("response", mode="before")
    @classmethod
    def normalize_response(cls, value: Any) -> Any:
        return _upper(value)


class CommentCreate(RequestModel):
    content: str = Field(min_length=1, max_length=10000)


class ImportRequest(RequestModel):
    calendar_id: str = Field(min_length=1)
    ics_content: str = Field(min_length=1)


# ============================================================================
# READ SCHEMAS
# ============================================================================


class CalendarSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    color: str | None = None
    context_type: ContextType
    context_id: str
    is_primary: bool = False
    is_system: bool = False
    is_deletable: bool = True
    default_reminder_minutes: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ContextMemberSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    context_type: ContextType
    context_id: str
    user_id: str
    role: ContextRole


class EventAttendeeSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str | None = None
    email: str | None = None
    response: AttendeeResponse = AttendeeResponse.NEEDS_ACTION
    responded_at: datetime | None = None


class EventReminderSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    minutes_before: int
    method: ReminderMethod = ReminderMethod.APP


class EventCommentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    user_id: str
    content: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EventSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    calendar_id: str
    kind: EventKind
    title: str
    description: str | None = None
    location: str | None = None
    online_meeting_link: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    timezone: str = "UTC"
    recurrence_rule: str | None = None
    recurrence_end_at: datetime | None = None
    parent_event_id: str | None = None
    occurrence_start_at: datetime | None = None
    cancelled: bool = False
    created_by_id: str | None = None
    version: int = 1
    attendees: list[EventAttendeeSchema] = []
    reminders: list[EventReminderSchema] = []


class OccurrenceSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event: EventSchema
    start: datetime
    end: datetime
    series_id: str | None = None
    original_start: datetime | None = None


class IntervalSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start: datetime
    end: datetime


class ImportResultSchema(BaseModel):
    imported: int
    failed: int
    events: list[EventSchema]
