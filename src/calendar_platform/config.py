from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///./calendar.db"
DEV_RSVP_SECRET = "dev-rsvp-secret"


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    environment: str = "development"
    control_plane_url: Optional[str] = None
    control_plane_timeout: float = 20.0
    rsvp_token_secret: str = DEV_RSVP_SECRET
    rsvp_token_ttl_seconds: int = 14 * 24 * 3600
    rsvp_rate_limit_per_minute: int = 30
    public_base_url: str = "http://localhost:8000"
    ical_domain: str = "calendar.local"
    log_level: str = "INFO"
    sql_echo: bool = False

    @property
    def is_dev_mode(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "Settings":
        environment = environ.get("ENVIRONMENT", "development").lower()
        secret = environ.get("RSVP_TOKEN_SECRET")
        if not secret:
            if environment != "development":
                raise RuntimeError("RSVP_TOKEN_SECRET must be set outside development")
            secret = DEV_RSVP_SECRET
        return cls(
            database_url=environ.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            environment=environment,
            control_plane_url=environ.get("CONTROL_PLANE_URL") or None,
            control_plane_timeout=float(environ.get("CONTROL_PLANE_TIMEOUT", "20.0")),
            rsvp_token_secret=secret,
            rsvp_token_ttl_seconds=int(
                environ.get("RSVP_TOKEN_TTL_SECONDS", str(14 * 24 * 3600))
            ),
            rsvp_rate_limit_per_minute=int(
                environ.get("RSVP_RATE_LIMIT_PER_MINUTE", "30")
            ),
            public_base_url=environ.get("PUBLIC_BASE_URL", "http://localhost:8000"),
            ical_domain=environ.get("ICAL_DOMAIN", "calendar.local"),
            log_level=environ.get("LOG_LEVEL", "INFO").upper(),
            sql_echo=_as_bool(environ.get("SQL_ECHO")),
        )


def load_settings() -> Settings:
    """Settings from the process environment, after reading `.env` if present."""
    load_dotenv()
    return Settings.from_environ(os.environ)
