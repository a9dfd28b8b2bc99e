from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse
from starlette import status

from calendar_platform.session import SessionManager
from calendar_platform.api.auth import ControlPlaneAuthenticator

logger = logging.getLogger(__name__)

# Reachable without a bearer credential; still get a database session
PUBLIC_PATHS = frozenset({"/api/calendar/rsvp"})
HEALTH_PATH = "/health"


def _error(message: str, code: int, reason: str) -> JSONResponse:
    return JSONResponse(
        {
            "success": False,
            "message": message,
            "error": {"code": code, "reason": reason, "message": message},
        },
        status_code=code,
    )


class CalendarAuthMiddleware(BaseHTTPMiddleware):
    """Authenticates the caller and opens the request's database session."""

    def __init__(
        self,
        app,
        *,
        session_manager: SessionManager,
        authenticator: ControlPlaneAuthenticator,
    ):
        super().__init__(app)
        self.session_manager = session_manager
        self.authenticator = authenticator

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.scope.get("path", "")
        if path == HEALTH_PATH:
            return await call_next(request)

        try:
            principal = None
            if path not in PUBLIC_PATHS:
                api_key_hdr = request.headers.get("Authorization") or request.headers.get(
                    "X-API-Key"
                )
                principal = await self.authenticator.resolve_principal(api_key_hdr)

            with self.session_manager.with_session() as session:
                request.state.principal = principal
                request.state.principal_id = principal.id if principal else None
                request.state.db_session = session
                response = await call_next(request)
                if response.status_code >= 400:
                    # Handlers convert errors to responses; undo their partial writes
                    session.rollback()
                return response
        except PermissionError as exc:
            return _error(str(exc), status.HTTP_401_UNAUTHORIZED, "authError")
        except RuntimeError as exc:
            logger.error(f"Control plane error: {exc}")
            return _error(
                str(exc), status.HTTP_503_SERVICE_UNAVAILABLE, "serviceUnavailable"
            )
        except Exception:
            logger.exception("Unhandled exception in CalendarAuthMiddleware")
            return _error(
                "Internal server error",
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "internalError",
            )
