from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from calendar_platform.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request."""

    id: str
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").upper() == "ADMIN"


def strip_bearer(header_value: str) -> str:
    """Strip a "Bearer " prefix if present."""
    if header_value.lower().startswith("bearer "):
        return header_value[7:].strip()
    return header_value.strip()


def parse_dev_token(token: str) -> Principal:
    """
    Development credentials carry the principal directly: `<user id>` or
    `<user id>:<email>`. An `admin:` prefix grants the platform ADMIN role.
    """
    role = None
    if token.lower().startswith("admin:"):
        role = "ADMIN"
        token = token[len("admin:") :]
    user_id, _, email = token.partition(":")
    if not user_id:
        raise PermissionError("invalid development token")
    return Principal(id=user_id, email=email or None, role=role)


class ControlPlaneAuthenticator:
    """Resolves bearer credentials to principals."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._http_client: httpx.AsyncClient | None = None
        self._http_client_lock = asyncio.Lock()

    def is_dev_mode(self) -> bool:
        """Check if running in development mode."""
        return self.settings.is_dev_mode

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client with connection pooling."""
        if self._http_client is None or self._http_client.is_closed:
            async with self._http_client_lock:
                if self._http_client is None or self._http_client.is_closed:
                    self._http_client = httpx.AsyncClient(
                        timeout=self.settings.control_plane_timeout,
                        limits=httpx.Limits(
                            max_connections=100, max_keepalive_connections=20
                        ),
                    )
        return self._http_client

    async def validate_with_control_plane(self, api_key: str) -> Principal:
        """Validate a credential with the control plane and return its principal."""
        if not self.settings.control_plane_url:
            raise RuntimeError("CONTROL_PLANE_URL not configured for production mode")

        try:
            client = await self._get_http_client()
            response = await client.post(
                f"{self.settings.control_plane_url}/validate",
                json={"api_key": api_key, "action": "calendar_request"},
            )

            if response.status_code == 200:
                data = response.json()
                if data.get("valid"):
                    return Principal(
                        id=data["user_id"],
                        email=data.get("email"),
                        role=data.get("role"),
                    )
                raise PermissionError(data.get("reason", "access denied"))
            elif response.status_code == 401:
                raise PermissionError("invalid api key")
            elif response.status_code == 429:
                raise PermissionError("rate limit exceeded")
            else:
                raise PermissionError(f"authorization failed: {response.status_code}")

        except httpx.TimeoutException:
            raise PermissionError("control plane timeout - try again")
        except httpx.RequestError as e:
            raise RuntimeError(f"control plane unavailable: {e}")

    async def resolve_principal(self, header_value: Optional[str]) -> Principal:
        """
        Resolve the Authorization (or X-API-Key) header to a principal.

        Raises:
            PermissionError: credential missing or rejected
            RuntimeError: control plane unreachable
        """
        if not header_value or not strip_bearer(header_value):
            raise PermissionError("missing api key")

        token = strip_bearer(header_value)
        if self.is_dev_mode():
            return parse_dev_token(token)
        return await self.validate_with_control_plane(token)

    async def aclose(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None
