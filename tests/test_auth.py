import base64
import hashlib
import json
from urllib.parse import parse_qs

import httpx
import pytest

from ocea_exporter.auth import (
    CSRF_COOKIE,
    TokenManager,
    extract_auth_code,
    generate_pkce_pair,
)
from ocea_exporter.exceptions import (
    AuthenticationError,
    NoRefreshTokenError,
    OceaAPIError,
    SettingsNotFoundError,
)
from ocea_exporter.models import Credentials, TokenSet

from test_login_page import authorize_page

NOW = 1_700_000_000


def token_body(access="access-1", refresh="refresh-1") -> dict:
    return {
        "access_token": access,
        "id_token": "id-token",
        "token_type": "Bearer",
        "not_before": str(NOW),
        "expires_in": "3600",
        "expires_on": str(NOW + 3600),
        "refresh_token": refresh,
        "refresh_token_expires_in": 86400,
    }


class FakeB2C:
    """Minimal B2C tenant answering the four login steps and the refresh grant."""

    def __init__(self):
        self.requests = []
        self.page = authorize_page()
        self.set_csrf_cookie = True
        self.confirm_status = 302
        self.refresh_status = 200

    @property
    def steps(self):
        return [step for step, _ in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path.endswith("/oauth2/v2.0/authorize"):
            self.requests.append(("authorize", request))
            headers = {}
            if self.set_csrf_cookie:
                headers["Set-Cookie"] = f"{CSRF_COOKIE}=csrf-cookie-value; path=/"
            return httpx.Response(200, text=self.page, headers=headers)

        if path.endswith("/SelfAsserted"):
            self.requests.append(("self_asserted", request))
            assert request.headers["X-CSRF-TOKEN"] == "csrf-cookie-value"
            return httpx.Response(200, json={"status": "200"})

        if path.endswith("/CombinedSigninAndSignup/confirmed"):
            self.requests.append(("confirm", request))
            if self.confirm_status != 302:
                return httpx.Response(self.confirm_status, text="<html>error</html>")
            location = "https://espace-resident.ocea-sb.com/#state=abc&client_info=xyz&code=AUTH-CODE"
            return httpx.Response(302, headers={"Location": location})

        if path.endswith("/oauth2/v2.0/token"):
            form = parse_qs(request.content.decode())
            grant = form["grant_type"][0]
            self.requests.append((grant, request))
            if grant == "refresh_token":
                if self.refresh_status != 200:
                    return httpx.Response(self.refresh_status, json={"error": "invalid_grant"})
                return httpx.Response(200, json=token_body(access="access-refreshed", refresh="refresh-2"))
            assert form["code"] == ["AUTH-CODE"]
            assert form["code_verifier"][0].startswith("clear_")
            return httpx.Response(200, json=token_body())

        return httpx.Response(404)


@pytest.fixture
def b2c():
    return FakeB2C()


@pytest.fixture
def manager(b2c):
    return TokenManager(
        Credentials(username="alice@example.org", password="s3cret"),
        transport=httpx.MockTransport(b2c.handler),
        clock=lambda: NOW,
    )


def set_tokens(manager: TokenManager, **fields):
    manager._tokens = TokenSet(**fields)


async def test_cold_start_logs_in(manager, b2c):
    token = await manager.get_token()

    assert token == "access-1"
    assert b2c.steps == ["authorize", "self_asserted", "confirm", "authorization_code"]
    assert manager.tokens.expires_on == NOW + 3600


async def test_credentials_are_posted(manager, b2c):
    await manager.get_token()

    _, request = b2c.requests[1]
    form = parse_qs(request.content.decode())
    assert form["request_type"] == ["RESPONSE"]
    assert form["email"] == ["alice@example.org"]
    assert form["password"] == ["s3cret"]
    assert request.url.params["p"] == "B2C_1A_SIGNUP_SIGNIN"
    assert request.url.params["tx"] == "StateProperties=eyJUSUQiOiI4ZjM1"


async def test_valid_token_is_reused(manager, b2c):
    await manager.get_token()
    await manager.get_token()

    assert b2c.steps.count("authorize") == 1


async def test_expiring_token_is_refreshed(manager, b2c):
    set_tokens(
        manager,
        access_token="old",
        not_before=NOW - 600,
        expires_on=NOW + 5,
        refresh_token="refresh-0",
        refresh_token_expires_in=86400,
    )

    token = await manager.get_token()

    assert token == "access-refreshed"
    assert b2c.steps == ["refresh_token"]
    assert manager.tokens.refresh_token == "refresh-2"


async def test_expired_refresh_window_logs_in(manager, b2c):
    set_tokens(
        manager,
        access_token="old",
        not_before=NOW - 86400,
        expires_on=NOW - 100,
        refresh_token="refresh-0",
        refresh_token_expires_in=86400,
    )

    assert await manager.get_token() == "access-1"
    assert "refresh_token" not in b2c.steps


async def test_missing_csrf_in_page_is_raised_unchanged(manager, b2c):
    set_tokens(manager, access_token="old", expires_on=NOW - 1)
    b2c.page = authorize_page(csrf=False)

    with pytest.raises(SettingsNotFoundError) as exc_info:
        await manager.get_token()

    assert exc_info.value.field == "csrf"
    assert manager.tokens.access_token == "old"


async def test_missing_csrf_cookie(manager, b2c):
    b2c.set_csrf_cookie = False

    with pytest.raises(AuthenticationError, match="csrf token not found"):
        await manager.get_token()

    assert "self_asserted" not in b2c.steps


async def test_confirm_without_redirect_keeps_tokens(manager, b2c):
    set_tokens(manager, access_token="old", expires_on=NOW - 1)
    b2c.confirm_status = 200

    with pytest.raises(AuthenticationError, match="expected 302"):
        await manager.get_token()

    assert manager.tokens.access_token == "old"


async def test_rejected_refresh_falls_back_to_login(manager, b2c):
    set_tokens(
        manager,
        access_token="old",
        not_before=NOW - 600,
        expires_on=NOW - 1,
        refresh_token="revoked",
        refresh_token_expires_in=86400,
    )
    b2c.refresh_status = 400

    with pytest.raises(AuthenticationError):
        await manager.get_token()

    assert await manager.get_token() == "access-1"
    assert b2c.steps == ["refresh_token", "authorize", "self_asserted", "confirm", "authorization_code"]


async def test_refresh_without_refresh_token(manager):
    with pytest.raises(NoRefreshTokenError):
        await manager.refresh()


async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    manager = TokenManager(
        Credentials(username="alice@example.org", password="s3cret"),
        transport=httpx.MockTransport(handler),
        clock=lambda: NOW,
    )

    with pytest.raises(OceaAPIError) as exc_info:
        await manager.get_token()

    assert not isinstance(exc_info.value, AuthenticationError)


def test_pkce_pair():
    verifier, challenge = generate_pkce_pair()

    assert verifier.startswith("clear_")
    assert len(verifier) == len("clear_") + 43
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    assert challenge == expected
    assert "=" not in challenge


def test_extract_auth_code():
    assert extract_auth_code("https://example.org/#state=s&code=abc123&client_info=x") == "abc123"

    with pytest.raises(AuthenticationError):
        extract_auth_code("https://example.org/#state=s")
    with pytest.raises(AuthenticationError):
        extract_auth_code(None)


def test_token_set_windows():
    tokens = TokenSet(
        access_token="a",
        not_before=NOW,
        expires_on=NOW + 3600,
        refresh_token="r",
        refresh_token_expires_in=86400,
    )

    assert tokens.access_valid(NOW + 3589)
    assert not tokens.access_valid(NOW + 3590)
    assert tokens.refresh_valid(NOW + 86389)
    assert not tokens.refresh_valid(NOW + 86390)
    assert not TokenSet(access_token="a", expires_on=NOW + 3600).refresh_valid(NOW)
    assert json.loads(tokens.model_dump_json())["refresh_token"] == "r"
