"""
Calendar Service - Endpoint Handlers

REST endpoints for calendars, events, recurrence edits, free/busy, ICS
import/export, RSVP links and schedule summaries. Uses Starlette for HTTP
handling with SQLAlchemy for database operations.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar
from functools import wraps

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route
from starlette import status

from sqlalchemy.orm import Session

from ..database import (
    # Registry
    list_calendars,
    create_calendar,
    get_accessible_calendar,
    update_calendar,
    delete_calendar,
    auto_provision_calendar,
    resolve_visible_calendar_ids,
    # Events
    list_events_in_range,
    create_event,
    get_accessible_event,
    update_event,
    delete_event,
    search_events,
    rsvp_event,
    record_email_rsvp,
    # Comments
    list_comments,
    add_comment,
    delete_comment,
    # Free/busy & ICS
    get_free_busy,
    check_conflicts,
    export_ics,
    import_ics_events,
    # Summaries
    upcoming_events,
    today_schedule,
    check_availability,
)
from ..database.pydantic_schemas import (
    AutoProvisionRequest,
    CalendarCreate,
    CalendarUpdate,
    CommentCreate,
    EventCreate,
    EventUpdate,
    ImportRequest,
    RsvpRequest,
)
from ..core.errors import (
    CalendarAPIError,
    AuthenticationError,
    InternalError,
    RateLimitedError,
    ValidationError,
    RequiredFieldError,
    handle_exception,
)
from ..core.recurrence import Occurrence
from ..core.rsvp import (
    normalize_rsvp_response,
    render_confirmation,
    render_error,
    verify_rsvp_token,
)
from ..core.serializers import (
    serialize_attendee,
    serialize_calendar,
    serialize_calendars,
    serialize_comment,
    serialize_event,
    serialize_import_result,
    serialize_interval,
    serialize_occurrence,
    serialize_occurrences,
    serialize_response,
)
from ..core.utils import (
    format_rfc3339,
    parse_context_ref,
    parse_datetime_field,
    resolve_timezone,
    utc_now,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


# ============================================================================
# REQUEST UTILITIES
# ============================================================================


def _get_session(request: Request) -> Session:
    """The request's database session, opened by CalendarAuthMiddleware."""
    session = getattr(request.state, "db_session", None)
    if session is None:
        raise AuthenticationError("Missing database session")
    return session


def get_principal(request: Request):
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError()
    return principal


async def get_request_body(request: Request) -> dict[str, Any]:
    """Parse JSON body from request, return empty dict if no body."""
    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def parse_body(model: Type[ModelT], body: dict[str, Any]) -> ModelT:
    """Validate a request body, reporting the first failing field."""
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        if first.get("type") == "missing" and field:
            raise RequiredFieldError(field)
        message = first.get("msg", "Invalid request body")
        raise ValidationError(
            f"{field}: {message}" if field else message, field=field
        )


def parse_datetime_param(
    request: Request, name: str, required: bool = False
) -> Optional[datetime]:
    raw_value = request.query_params.get(name)
    if not raw_value:
        if required:
            raise RequiredFieldError(name)
        return None
    return parse_datetime_field(raw_value, name)


def parse_bool_param(request: Request, name: str, default: bool = False) -> bool:
    raw_value = request.query_params.get(name)
    if raw_value is None or raw_value == "":
        return default
    value = raw_value.strip().lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    raise ValidationError(f"{name} must be true or false", field=name)


def parse_int_param(
    request: Request,
    name: str,
    default: int,
    min_value: int = 1,
    max_value: Optional[int] = None,
) -> int:
    raw_value = request.query_params.get(name)
    if raw_value is None or raw_value == "":
        return default
    try:
        value = int(raw_value)
    except ValueError:
        raise ValidationError(f"{name} must be a valid integer", field=name)
    if value < min_value:
        raise ValidationError(f"{name} must be >= {min_value}", field=name)
    if max_value is not None:
        value = min(value, max_value)
    return value


def get_list_param(request: Request, name: str) -> list[str]:
    """
    Repeated (`name=a&name=b`), bracketed (`name[]=a`) or comma-separated
    (`name=a,b`) query values, in order, without blanks.
    """
    values: list[str] = []
    for raw in request.query_params.getlist(name) + request.query_params.getlist(
        f"{name}[]"
    ):
        values.extend(part.strip() for part in raw.split(","))
    return [v for v in values if v]


def get_visible_calendar_ids(request: Request) -> list[str]:
    """Calendars named by `contexts` and `calendarIds`, or all visible ones."""
    contexts = [parse_context_ref(ref) for ref in get_list_param(request, "contexts")]
    calendar_ids = get_list_param(request, "calendarIds")
    return resolve_visible_calendar_ids(
        _get_session(request),
        get_principal(request).id,
        contexts=contexts or None,
        calendar_ids=calendar_ids or None,
    )


def get_expected_version(request: Request, body_version: Optional[int]) -> Optional[int]:
    """Expected event version from the body, else from an If-Match header."""
    if body_version is not None:
        return body_version
    if_match = request.headers.get("If-Match")
    if not if_match:
        return None
    value = if_match.strip()
    if value.startswith("W/"):
        value = value[2:]
    value = value.strip('"')
    try:
        return int(value)
    except ValueError:
        raise ValidationError("If-Match must carry the event version", field="If-Match")


def ok(data: Any, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(content=serialize_response(data), status_code=status_code)


# ============================================================================
# ERROR HANDLING WRAPPER
# ============================================================================


def api_handler(
    handler: Callable[[Request], Awaitable[Response]]
) -> Callable[[Request], Awaitable[Response]]:
    """
    Decorator that wraps API handlers with:
    - Database session check (from CalendarAuthMiddleware)
    - Error handling and conversion to JSON responses

    Session commit/rollback is handled by the middleware; any response with
    an error status rolls back the request's writes.
    """

    @wraps(handler)
    async def wrapper(request: Request) -> Response:
        if getattr(request.state, "db_session", None) is None:
            logger.error("No database session for %s", request.url.path)
            return InternalError("Missing database session").to_response()

        try:
            return await handler(request)
        except CalendarAPIError as e:
            return handle_exception(e)
        except Exception as e:
            # Log full exception server-side, return sanitized error to client
            logger.exception("Unhandled exception in calendar API: %s", e)
            return InternalError().to_response()

    return wrapper


# ============================================================================
# CALENDAR ENDPOINTS
# ============================================================================


@api_handler
async def calendars_list(request: Request) -> JSONResponse:
    """
    GET /calendar

    Query parameters:
    - contextType: PERSONAL | BUSINESS | HOUSEHOLD
    - contextId: requires contextType
    """
    session = _get_session(request)
    principal = get_principal(request)
    calendars = list_calendars(
        session,
        principal.id,
        context_type=request.query_params.get("contextType") or None,
        context_id=request.query_params.get("contextId") or None,
    )
    return ok(serialize_calendars(calendars))


@api_handler
async def calendars_create(request: Request) -> JSONResponse:
    """POST /calendar"""
    session = _get_session(request)
    principal = get_principal(request)
    payload = parse_body(CalendarCreate, await get_request_body(request))

    calendar = create_calendar(
        session,
        principal.id,
        name=payload.name,
        context_type=payload.context_type,
        context_id=payload.context_id,
        color=payload.color,
        is_primary=payload.is_primary,
        default_reminder_minutes=payload.default_reminder_minutes,
    )
    return ok(serialize_calendar(calendar), status.HTTP_201_CREATED)


@api_handler
async def calendars_get(request: Request) -> JSONResponse:
    """GET /calendar/{calendarId}"""
    calendar = get_accessible_calendar(
        _get_session(request),
        get_principal(request).id,
        request.path_params["calendarId"],
    )
    return ok(serialize_calendar(calendar))


@api_handler
async def calendars_update(request: Request) -> JSONResponse:
    """PATCH /calendar/{calendarId}"""
    session = _get_session(request)
    principal = get_principal(request)
    payload = parse_body(CalendarUpdate, await get_request_body(request))

    calendar = update_calendar(
        session,
        principal.id,
        request.path_params["calendarId"],
        name=payload.name,
        color=payload.color,
        is_primary=payload.is_primary,
        default_reminder_minutes=payload.default_reminder_minutes,
    )
    return ok(serialize_calendar(calendar))


@api_handler
async def calendars_delete(request: Request) -> JSONResponse:
    """
    DELETE /calendar/{calendarId}

    Query parameters:
    - cascade: also delete the calendar's events (default false)
    """
    calendar_id = request.path_params["calendarId"]
    delete_calendar(
        _get_session(request),
        get_principal(request).id,
        calendar_id,
        cascade=parse_bool_param(request, "cascade"),
    )
    return ok({"id": calendar_id, "deleted": True})


@api_handler
async def calendars_auto_provision(request: Request) -> JSONResponse:
    """
    POST /calendar/auto-provision

    Returns the context's existing calendar (200) or the newly created
    system default calendar (201).
    """
    session = _get_session(request)
    principal = get_principal(request)
    payload = parse_body(AutoProvisionRequest, await get_request_body(request))

    calendar, created = auto_provision_calendar(
        session,
        payload.context_type,
        payload.context_id,
        name=payload.name,
        is_primary=payload.is_primary,
        gate=request.app.state.module_gate,
        principal_id=principal.id,
    )
    return ok(
        serialize_calendar(calendar),
        status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


# ============================================================================
# EVENT ENDPOINTS
# ============================================================================


@api_handler
async def events_list(request: Request) -> JSONResponse:
    """
    GET /calendar/events

    Expanded occurrences in [start, end) across the requested calendars.

    Query parameters:
    - start, end (required): RFC 3339 instants
    - contexts: TYPE:id references
    - calendarIds: calendar identifiers
    """
    start = parse_datetime_param(request, "start", required=True)
    end = parse_datetime_param(request, "end", required=True)
    calendar_ids = get_visible_calendar_ids(request)
    occurrences = list_events_in_range(_get_session(request), calendar_ids, start, end)
    return ok(serialize_occurrences(occurrences))


@api_handler
async def events_create(request: Request) -> JSONResponse:
    """POST /calendar/events"""
    session = _get_session(request)
    principal = get_principal(request)
    payload = parse_body(EventCreate, await get_request_body(request))

    event = create_event(
        session,
        principal.id,
        payload.calendar_id,
        title=payload.title,
        start_at=payload.start_at,
        end_at=payload.end_at,
        description=payload.description,
        location=payload.location,
        online_meeting_link=payload.online_meeting_link,
        all_day=payload.all_day,
        timezone=payload.timezone,
        recurrence_rule=payload.recurrence_rule,
        recurrence_end_at=payload.recurrence_end_at,
        attendees=payload.attendees,
        reminders=payload.reminders,
        dispatcher=request.app.state.dispatcher,
    )
    return ok(serialize_event(event), status.HTTP_201_CREATED)


@api_handler
async def events_get(request: Request) -> JSONResponse:
    """
    GET /calendar/events/{eventId}

    Query parameters:
    - includeComments: embed the event's comments (default false)
    """
    event = get_accessible_event(
        _get_session(request),
        get_principal(request).id,
        request.path_params["eventId"],
    )
    return ok(
        serialize_event(
            event, include_comments=parse_bool_param(request, "includeComments")
        )
    )


@api_handler
async def events_update(request: Request) -> JSONResponse:
    """
    PATCH /calendar/events/{eventId}

    Query parameters:
    - editMode: THIS | SERIES (required for recurring events)
    - occurrenceStartAt: the occurrence to detach when editMode=THIS on a series

    The expected version comes from the body's `version` or an If-Match header.
    """
    session = _get_session(request)
    principal = get_principal(request)
    payload = parse_body(EventUpdate, await get_request_body(request))

    event = update_event(
        session,
        principal.id,
        request.path_params["eventId"],
        payload.changes(),
        edit_mode=request.query_params.get("editMode"),
        occurrence_start_at=parse_datetime_param(request, "occurrenceStartAt"),
        expected_version=get_expected_version(request, payload.version),
        dispatcher=request.app.state.dispatcher,
    )
    return ok(serialize_event(event))


@api_handler
async def events_delete(request: Request) -> JSONResponse:
    """
    DELETE /calendar/events/{eventId}

    Single-occurrence deletes return the cancelled exception; everything
    else returns null data.
    """
    event_id = request.path_params["eventId"]
    cancelled = delete_event(
        _get_session(request),
        get_principal(request).id,
        event_id,
        edit_mode=request.query_params.get("editMode"),
        occurrence_start_at=parse_datetime_param(request, "occurrenceStartAt"),
    )
    return ok(serialize_event(cancelled) if cancelled is not None else None)


@api_handler
async def events_rsvp(request: Request) -> JSONResponse:
    """POST /calendar/events/{eventId}/rsvp"""
    payload = parse_body(RsvpRequest, await get_request_body(request))
    attendee = rsvp_event(
        _get_session(request),
        get_principal(request).id,
        request.path_params["eventId"],
        payload.response,
    )
    return ok(serialize_attendee(attendee))


@api_handler
async def events_search(request: Request) -> JSONResponse:
    """
    GET /calendar/events/search

    Query parameters:
    - text (required): case-insensitive substring
    - start, end: search expanded occurrences in this window
    - limit: maximum results (default 100)
    """
    text = request.query_params.get("text") or request.query_params.get("q")
    if not text or not text.strip():
        raise RequiredFieldError("text")
    results = search_events(
        _get_session(request),
        get_visible_calendar_ids(request),
        text,
        start=parse_datetime_param(request, "start"),
        end=parse_datetime_param(request, "end"),
        limit=parse_int_param(request, "limit", default=100, max_value=500),
    )
    return ok(
        [
            serialize_occurrence(item) if isinstance(item, Occurrence) else serialize_event(item)
            for item in results
        ]
    )


@api_handler
async def events_conflicts(request: Request) -> JSONResponse:
    """
    GET /calendar/events/conflicts

    Occurrences overlapping the candidate [start, end).

    Query parameters:
    - start, end (required)
    - excludeEventId: event being moved, ignored in the result
    """
    start = parse_datetime_param(request, "start", required=True)
    end = parse_datetime_param(request, "end", required=True)
    conflicts = check_conflicts(
        _get_session(request),
        get_visible_calendar_ids(request),
        start,
        end,
        exclude_event_id=request.query_params.get("excludeEventId") or None,
    )
    return ok(serialize_occurrences(conflicts))


@api_handler
async def freebusy(request: Request) -> JSONResponse:
    """
    GET /calendar/freebusy

    Query parameters:
    - start, end (required)
    - merge: coalesce overlapping and adjacent intervals (default false)
    """
    start = parse_datetime_param(request, "start", required=True)
    end = parse_datetime_param(request, "end", required=True)
    intervals = get_free_busy(
        _get_session(request),
        get_visible_calendar_ids(request),
        start,
        end,
        merge=parse_bool_param(request, "merge"),
    )
    return ok([serialize_interval(i) for i in intervals])


@api_handler
async def events_import(request: Request) -> JSONResponse:
    """POST /calendar/events/import  body: {calendarId, icsContent}"""
    payload = parse_body(ImportRequest, await get_request_body(request))
    imported, failed, events = import_ics_events(
        _get_session(request),
        get_principal(request).id,
        payload.calendar_id,
        payload.ics_content,
    )
    return ok(serialize_import_result(imported, failed, events))


@api_handler
async def events_export(request: Request) -> Response:
    """
    GET /calendar/events/export

    Query parameters:
    - start, end: export window (both or neither)
    - expand: one VEVENT per occurrence when a window is given (default true)
    """
    settings = request.app.state.settings
    content = export_ics(
        _get_session(request),
        get_visible_calendar_ids(request),
        settings.ical_domain,
        start=parse_datetime_param(request, "start"),
        end=parse_datetime_param(request, "end"),
        expand=parse_bool_param(request, "expand", default=True),
    )
    return Response(
        content=content,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="calendar.ics"'},
    )


# ============================================================================
# COMMENT ENDPOINTS
# ============================================================================


@api_handler
async def comments_list(request: Request) -> JSONResponse:
    """GET /calendar/events/{eventId}/comments"""
    comments = list_comments(
        _get_session(request),
        get_principal(request).id,
        request.path_params["eventId"],
    )
    return ok([serialize_comment(c) for c in comments])


@api_handler
async def comments_create(request: Request) -> JSONResponse:
    """POST /calendar/events/{eventId}/comments"""
    payload = parse_body(CommentCreate, await get_request_body(request))
    comment = add_comment(
        _get_session(request),
        get_principal(request).id,
        request.path_params["eventId"],
        payload.content,
    )
    return ok(serialize_comment(comment), status.HTTP_201_CREATED)


@api_handler
async def comments_delete(request: Request) -> JSONResponse:
    """DELETE /calendar/events/{eventId}/comments/{commentId}"""
    principal = get_principal(request)
    comment_id = request.path_params["commentId"]
    delete_comment(
        _get_session(request),
        principal.id,
        request.path_params["eventId"],
        comment_id,
        principal_role=principal.role,
    )
    return ok({"id": comment_id, "deleted": True})


# ============================================================================
# RSVP LINK (public, HTML)
# ============================================================================


async def rsvp_link(request: Request) -> HTMLResponse:
    """
    GET /calendar/rsvp?token=...&response=ACCEPTED|DECLINED|TENTATIVE

    Followed from invitation emails; needs no bearer credential. Rate
    limited per client address.
    """
    limiter = request.app.state.rsvp_rate_limiter
    client = request.client.host if request.client else "unknown"
    allowed, retry_after = await limiter.check(client)
    if not allowed:
        error = RateLimitedError("Too many requests. Please try again shortly.")
        return HTMLResponse(
            render_error(error.message),
            status_code=error.status_code,
            headers={"Retry-After": str(max(1, round(retry_after)))},
        )

    settings = request.app.state.settings
    try:
        claims = verify_rsvp_token(
            settings.rsvp_token_secret, request.query_params.get("token")
        )
        response = normalize_rsvp_response(request.query_params.get("response"))
        event, _ = record_email_rsvp(
            _get_session(request), claims.event_id, claims.email, response
        )
    except CalendarAPIError as e:
        logger.info("RSVP link rejected: %s", e.message)
        return HTMLResponse(render_error(e.message), status_code=e.status_code)

    logger.info("Recorded RSVP %s for event %s", response, event.id)
    return HTMLResponse(
        render_confirmation(event.title, response, when=format_rfc3339(event.start_at))
    )


# ============================================================================
# SCHEDULE SUMMARIES
# ============================================================================


@api_handler
async def agenda_upcoming(request: Request) -> JSONResponse:
    """
    GET /calendar/agenda/upcoming

    Query parameters:
    - days: look-ahead in days (default 7, at most 31)
    - limit: maximum occurrences (default 20, at most 100)
    - timezone: IANA zone used to group by day (default UTC)
    """
    summary = upcoming_events(
        _get_session(request),
        get_visible_calendar_ids(request),
        utc_now(),
        resolve_timezone(request.query_params.get("timezone")),
        days=parse_int_param(request, "days", default=7, max_value=31),
        limit=parse_int_param(request, "limit", default=20, max_value=100),
    )
    return ok(summary)


@api_handler
async def agenda_today(request: Request) -> JSONResponse:
    """GET /calendar/agenda/today?timezone="""
    summary = today_schedule(
        _get_session(request),
        get_visible_calendar_ids(request),
        utc_now(),
        resolve_timezone(request.query_params.get("timezone")),
    )
    return ok(summary)


@api_handler
async def availability(request: Request) -> JSONResponse:
    """GET /calendar/availability?start&end"""
    start = parse_datetime_param(request, "start", required=True)
    end = parse_datetime_param(request, "end", required=True)
    summary = check_availability(
        _get_session(request), get_visible_calendar_ids(request), start, end
    )
    return ok(summary)


# ============================================================================
# ROUTES
# ============================================================================


# Literal paths come before {calendarId} / {eventId} captures
event_routes = [
    Route("/calendar/events", events_list, methods=["GET"]),
    Route("/calendar/events", events_create, methods=["POST"]),
    Route("/calendar/events/search", events_search, methods=["GET"]),
    Route("/calendar/events/conflicts", events_conflicts, methods=["GET"]),
    Route("/calendar/events/import", events_import, methods=["POST"]),
    Route("/calendar/events/export", events_export, methods=["GET"]),
    Route("/calendar/events/{eventId}", events_get, methods=["GET"]),
    Route("/calendar/events/{eventId}", events_update, methods=["PATCH"]),
    Route("/calendar/events/{eventId}", events_delete, methods=["DELETE"]),
    Route("/calendar/events/{eventId}/rsvp", events_rsvp, methods=["POST"]),
    Route("/calendar/events/{eventId}/comments", comments_list, methods=["GET"]),
    Route("/calendar/events/{eventId}/comments", comments_create, methods=["POST"]),
    Route(
        "/calendar/events/{eventId}/comments/{commentId}",
        comments_delete,
        methods=["DELETE"],
    ),
]

summary_routes = [
    Route("/calendar/freebusy", freebusy, methods=["GET"]),
    Route("/calendar/availability", availability, methods=["GET"]),
    Route("/calendar/agenda/upcoming", agenda_upcoming, methods=["GET"]),
    Route("/calendar/agenda/today", agenda_today, methods=["GET"]),
    Route("/calendar/rsvp", rsvp_link, methods=["GET"]),
]

calendar_routes = [
    Route("/calendar", calendars_list, methods=["GET"]),
    Route("/calendar", calendars_create, methods=["POST"]),
    Route("/calendar/auto-provision", calendars_auto_provision, methods=["POST"]),
    Route("/calendar/{calendarId}", calendars_get, methods=["GET"]),
    Route("/calendar/{calendarId}", calendars_update, methods=["PATCH"]),
    Route("/calendar/{calendarId}", calendars_delete, methods=["DELETE"]),
]

# Export all routes
routes = event_routes + summary_routes + calendar_routes
