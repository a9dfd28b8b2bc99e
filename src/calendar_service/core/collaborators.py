# External collaborators
# Module gating and invitation delivery live outside the calendar service

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol
from urllib.parse import urlencode

from .rsvp import DEFAULT_TTL_SECONDS, generate_rsvp_token
from .utils import format_rfc3339

logger = logging.getLogger(__name__)


class ModuleGate(Protocol):
    """Answers whether the calendar module is enabled for a context."""

    def is_enabled(self, context_type: str, context_id: str) -> bool: ...


class AllowAllModuleGate:
    def is_enabled(self, context_type: str, context_id: str) -> bool:
        return True


class StaticModuleGate:
    """Gate backed by a fixed set of disabled contexts."""

    def __init__(self, disabled: Optional[set[tuple[str, str]]] = None):
        self.disabled = set(disabled or ())

    def is_enabled(self, context_type: str, context_id: str) -> bool:
        return (context_type, context_id) not in self.disabled


@dataclass(frozen=True)
class Invitation:
    """One invitation to deliver to an external attendee."""

    event_id: str
    event_title: str
    starts_at: str
    email: str
    accept_url: str
    decline_url: str
    tentative_url: str


class Notifier(Protocol):
    def send_invitation(self, invitation: Invitation) -> None: ...


class LoggingNotifier:
    """Default notifier: records invitations in the log instead of sending mail."""

    def send_invitation(self, invitation: Invitation) -> None:
        logger.info(
            "Invitation for event %s sent to %s",
            invitation.event_id,
            invitation.email,
        )


class RecordingNotifier:
    """Keeps invitations in memory. Used by tests and local tooling."""

    def __init__(self):
        self.sent: list[Invitation] = []

    def send_invitation(self, invitation: Invitation) -> None:
        self.sent.append(invitation)


class InvitationDispatcher:
    """
    Builds RSVP links for email attendees and hands invitations to a Notifier.

    Each invitee gets one signed token; the three links differ only in the
    `response` query parameter.
    """

    def __init__(
        self,
        notifier: Notifier,
        secret: str,
        base_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.notifier = notifier
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    def rsvp_url(self, token: str, response: str) -> str:
        query = urlencode({"token": token, "response": response})
        return f"{self.base_url}/api/calendar/rsvp?{query}"

    def invite(self, event: Any, emails: Iterable[str]) -> int:
        sent = 0
        for email in emails:
            token = generate_rsvp_token(
                self.secret, event.id, email, ttl_seconds=self.ttl_seconds
            )
            self.notifier.send_invitation(
                Invitation(
                    event_id=event.id,
                    event_title=event.title,
                    starts_at=format_rfc3339(event.start_at),
                    email=email,
                    accept_url=self.rsvp_url(token, "ACCEPTED"),
                    decline_url=self.rsvp_url(token, "DECLINED"),
                    tentative_url=self.rsvp_url(token, "TENTATIVE"),
                )
            )
            sent += 1
        return sent
