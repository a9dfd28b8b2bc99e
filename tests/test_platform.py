"""Settings loading and bearer credential resolution."""

import httpx
import pytest

from calendar_platform.api.auth import ControlPlaneAuthenticator, parse_dev_token
from calendar_platform.config import DEV_RSVP_SECRET, Settings


def test_settings_defaults_in_development():
    settings = Settings.from_environ({})
    assert settings.is_dev_mode
    assert settings.rsvp_token_secret == DEV_RSVP_SECRET
    assert settings.database_url.startswith("sqlite")


def test_settings_read_environment():
    settings = Settings.from_environ(
        {
            "ENVIRONMENT": "Production",
            "RSVP_TOKEN_SECRET": "s3cret",
            "RSVP_RATE_LIMIT_PER_MINUTE": "10",
            "SQL_ECHO": "true",
            "LOG_LEVEL": "debug",
        }
    )
    assert not settings.is_dev_mode
    assert settings.rsvp_rate_limit_per_minute == 10
    assert settings.sql_echo is True
    assert settings.log_level == "DEBUG"


def test_production_requires_rsvp_secret():
    with pytest.raises(RuntimeError):
        Settings.from_environ({"ENVIRONMENT": "production"})


@pytest.mark.parametrize(
    "token,expected",
    [
        ("user-1", ("user-1", None, None)),
        ("user-1:a@example.com", ("user-1", "a@example.com", None)),
        ("admin:root", ("root", None, "ADMIN")),
    ],
)
def test_dev_tokens(token, expected):
    principal = parse_dev_token(token)
    assert (principal.id, principal.email, principal.role) == expected


def control_plane(handler) -> ControlPlaneAuthenticator:
    authenticator = ControlPlaneAuthenticator(
        Settings(environment="production", control_plane_url="http://control")
    )
    authenticator._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return authenticator


async def test_control_plane_accepts_valid_key():
    def handler(request):
        assert request.url.path == "/validate"
        return httpx.Response(200, json={"valid": True, "user_id": "user-9", "role": "ADMIN"})

    authenticator = control_plane(handler)
    principal = await authenticator.resolve_principal("Bearer key-123")
    await authenticator.aclose()

    assert principal.id == "user-9"
    assert principal.is_admin


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"valid": False, "reason": "revoked"}),
        httpx.Response(401),
        httpx.Response(500),
    ],
)
async def test_control_plane_rejections(response):
    authenticator = control_plane(lambda request: response)
    with pytest.raises(PermissionError):
        await authenticator.resolve_principal("Bearer key-123")
    await authenticator.aclose()


async def test_missing_credential_is_rejected():
    authenticator = ControlPlaneAuthenticator(Settings())
    with pytest.raises(PermissionError):
        await authenticator.resolve_principal(None)
    with pytest.raises(PermissionError):
        await authenticator.resolve_principal("Bearer ")
