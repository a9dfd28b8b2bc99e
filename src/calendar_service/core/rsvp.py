# RSVP capability tokens
# Signed, expiring links that let an invitee answer without logging in

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from html import escape
from typing import Optional

from .errors import InvalidTokenError, ValidationError

TOKEN_PREFIX = "rsvp."
DEFAULT_TTL_SECONDS = 14 * 24 * 3600

RSVP_RESPONSES = ("ACCEPTED", "DECLINED", "TENTATIVE")


@dataclass(frozen=True)
class RsvpClaims:
    event_id: str
    email: str
    expires_at: int


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(secret: str, payload: str) -> str:
    digest = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).digest()
    return _b64encode(digest)


def generate_rsvp_token(
    secret: str,
    event_id: str,
    email: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    """
    Create a signed RSVP token for (event, invitee email).

    Format: `rsvp.<base64url json payload>.<base64url HMAC-SHA256>`. The
    prefix keeps these tokens distinguishable from bearer credentials.
    """
    if not secret:
        raise ValueError("RSVP token secret is not configured")
    if ttl_seconds <= 0:
        raise ValidationError("ttl must be positive", field="ttl")

    issued = int(now if now is not None else time.time())
    claims = {"e": event_id, "m": email.strip().lower(), "x": issued + ttl_seconds}
    payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode())
    return f"{TOKEN_PREFIX}{payload}.{_sign(secret, payload)}"


def verify_rsvp_token(
    secret: str, token: Optional[str], now: Optional[float] = None
) -> RsvpClaims:
    """
    Verify signature and expiry of an RSVP token.

    Raises:
        InvalidTokenError: if the token is missing, forged, malformed or expired
    """
    if not token or not token.startswith(TOKEN_PREFIX):
        raise InvalidTokenError()

    body = token[len(TOKEN_PREFIX) :]
    payload, sep, signature = body.partition(".")
    if not sep or not payload or not signature:
        raise InvalidTokenError()

    if not hmac.compare_digest(signature, _sign(secret, payload)):
        raise InvalidTokenError()

    try:
        claims = json.loads(_b64decode(payload))
        event_id = str(claims["e"])
        email = str(claims["m"])
        expires_at = int(claims["x"])
    except (ValueError, KeyError, TypeError):
        raise InvalidTokenError()

    current = now if now is not None else time.time()
    if current > expires_at:
        raise InvalidTokenError("RSVP link has expired")

    return RsvpClaims(event_id=event_id, email=email, expires_at=expires_at)


def normalize_rsvp_response(value: Optional[str]) -> str:
    if not value:
        raise ValidationError("response is required", field="response")
    normalized = value.strip().upper()
    if normalized not in RSVP_RESPONSES:
        raise ValidationError(
            f"Invalid response: {value}. Expected one of {', '.join(RSVP_RESPONSES)}",
            field="response",
        )
    return normalized


_RESPONSE_TEXT = {
    "ACCEPTED": "You're going",
    "DECLINED": "You declined",
    "TENTATIVE": "You might attend",
}


def render_confirmation(title: str, response: str, when: Optional[str] = None) -> str:
    """HTML confirmation fragment shown after an RSVP link is followed."""
    heading = escape(_RESPONSE_TEXT.get(response, response))
    parts = [
        '<div class="rsvp-confirmation">',
        f"<h1>{heading}</h1>",
        f"<p>Your response to <strong>{escape(title)}</strong> has been recorded.</p>",
    ]
    if when:
        parts.append(f"<p>{escape(when)}</p>")
    parts.append("</div>")
    return "\n".join(parts)


def render_error(message: str) -> str:
    return f'<div class="rsvp-error"><h1>RSVP failed</h1><p>{escape(message)}</p></div>'
