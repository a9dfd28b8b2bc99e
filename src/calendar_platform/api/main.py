from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from sqlalchemy import Engine
from starlette.applications import Starlette
from starlette.routing import Router

from calendar_platform.api.auth import ControlPlaneAuthenticator
from calendar_platform.api.middleware import CalendarAuthMiddleware
from calendar_platform.api.routes import routes as platform_routes
from calendar_platform.config import Settings, load_settings
from calendar_platform.logging_config import setup_logging
from calendar_platform.session import SessionManager, build_engine
from calendar_service.api.methods import routes as calendar_routes
from calendar_service.core.collaborators import (
    AllowAllModuleGate,
    InvitationDispatcher,
    LoggingNotifier,
    ModuleGate,
    Notifier,
)
from calendar_service.core.rate_limit import RateLimitConfig, RateLimiter

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    notifier: Optional[Notifier] = None,
    module_gate: Optional[ModuleGate] = None,
) -> Starlette:
    settings = settings or load_settings()
    setup_logging(settings.log_level, sql_echo=settings.sql_echo)

    engine = engine or build_engine(settings.database_url, echo=settings.sql_echo)
    sessions = SessionManager(engine)
    authenticator = ControlPlaneAuthenticator(settings)

    dispatcher = InvitationDispatcher(
        notifier or LoggingNotifier(),
        secret=settings.rsvp_token_secret,
        base_url=settings.public_base_url,
        ttl_seconds=settings.rsvp_token_ttl_seconds,
    )
    rsvp_rate_limiter = RateLimiter(
        RateLimitConfig(limit=settings.rsvp_rate_limit_per_minute, window_seconds=60.0)
    )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(
            "Calendar service starting (environment=%s)", settings.environment
        )
        yield
        await authenticator.aclose()

    app = Starlette(routes=platform_routes, lifespan=lifespan)

    app.state.settings = settings
    app.state.sessions = sessions
    app.state.authenticator = authenticator
    app.state.dispatcher = dispatcher
    app.state.module_gate = module_gate or AllowAllModuleGate()
    app.state.rsvp_rate_limiter = rsvp_rate_limiter

    app.add_middleware(
        CalendarAuthMiddleware,
        session_manager=sessions,
        authenticator=authenticator,
    )

    app.mount("/api", Router(calendar_routes))

    return app


def main() -> None:
    uvicorn.run(
        "calendar_platform.api.main:create_app",
        factory=True,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
