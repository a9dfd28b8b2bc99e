"""
Shared pytest fixtures for all tests.

Every test gets its own temporary SQLite database. API tests run the full
app (middleware, routes, handlers) against it with development-mode auth,
where the bearer token is the principal id.
"""

import os
import tempfile

import pytest
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from calendar_platform.api.main import create_app
from calendar_platform.config import Settings
from calendar_platform.session import SessionManager, build_engine
from calendar_service.core.collaborators import RecordingNotifier, StaticModuleGate
from calendar_service.database import Base, ContextRole, add_context_member

USER = "user-1"
OTHER_USER = "user-2"
BUSINESS_ID = "biz-1"
DISABLED_BUSINESS_ID = "biz-disabled"


@pytest.fixture
def sqlite_url():
    """Temporary SQLite database file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    yield f"sqlite:///{db_path}"
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def engine(sqlite_url):
    engine = build_engine(sqlite_url)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_manager(engine):
    return SessionManager(engine)


@pytest.fixture
def session(engine):
    """A session for driving operations directly."""
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def memberships(session_manager):
    """USER owns BUSINESS_ID; OTHER_USER is a viewer there."""
    with session_manager.with_session() as session:
        add_context_member(session, "BUSINESS", BUSINESS_ID, USER, ContextRole.OWNER)
        add_context_member(
            session, "BUSINESS", BUSINESS_ID, OTHER_USER, ContextRole.VIEWER
        )
        add_context_member(
            session, "BUSINESS", DISABLED_BUSINESS_ID, USER, ContextRole.OWNER
        )


@pytest.fixture
def settings(sqlite_url):
    return Settings(
        database_url=sqlite_url,
        environment="development",
        rsvp_token_secret="test-secret",
        rsvp_rate_limit_per_minute=5,
        public_base_url="http://testserver",
        ical_domain="test.local",
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(settings, engine, notifier):
    return create_app(
        settings,
        engine=engine,
        notifier=notifier,
        module_gate=StaticModuleGate({("BUSINESS", DISABLED_BUSINESS_ID)}),
    )


@pytest.fixture
def client(app, memberships):
    with TestClient(app) as client:
        yield client


def auth(user_id: str = USER) -> dict[str, str]:
    return {"Authorization": f"Bearer {user_id}"}


IMPORT_DOC = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//Test//EN
BEGIN:VEVENT
UID:weekly@example.com
DTSTART:20240101T090000Z
DURATION:PT30M
SUMMARY:Planning
RRULE:FREQ=WEEKLY;COUNT=4
EXDATE:20240108T090000Z
END:VEVENT
BEGIN:VEVENT
UID:weekly@example.com
RECURRENCE-ID:20240115T090000Z
DTSTART:20240115T130000Z
DTEND:20240115T133000Z
SUMMARY:Planning (moved)
END:VEVENT
BEGIN:VEVENT
UID:nosummary@example.com
DTSTART:20240201T100000Z
END:VEVENT
BEGIN:VEVENT
UID:broken@example.com
SUMMARY:No start
END:VEVENT
END:VCALENDAR
"""


@pytest.fixture
def import_doc() -> str:
    """Two-event series with an EXDATE and a moved occurrence, plus edge cases."""
    return IMPORT_DOC
