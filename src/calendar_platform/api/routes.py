from datetime import datetime, timezone

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route


async def health_check(request: Request) -> JSONResponse:
    time = datetime.now(timezone.utc)
    return JSONResponse(
        {
            "status": "healthy",
            "service": "calendar-service",
            "time": time.isoformat(),
        }
    )


routes = [
    Route("/health", health_check, methods=["GET"]),
]
