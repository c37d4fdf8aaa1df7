"""
Tests for the Google OAuth endpoints under /api/auth/oauth/.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import select

from finance.tradedash.api.app.config import TOKEN_REFRESH_QUEUE
from finance.tradedash.api.app.handlers.oauth import safe_redirect_after
from finance.tradedash.api.auth.oauth import create_state, state_key, validate_state
from finance.tradedash.api.auth.sessions import SESSION_COOKIE
from finance.tradedash.api.model.users import LinkedAccount
from tests.test_helpers import (
    cookie_header,
    create_user,
    error_code,
    fake_google,
    google_user_payload,
)


def token_body(state: str, **overrides):
    body = {
        "access_token": "ya29.frontend-token",
        "refresh_token": "1//frontend-refresh",
        "expires_in": 3600,
        "state": state,
        "user_info": google_user_payload(),
    }
    body.update(overrides)
    return body


class TestSafeRedirectAfter:
    @pytest.mark.parametrize("value", ["/", "/portfolio", "/trade?pair=BTCUSDT"])
    def test_local_paths(self, value):
        assert safe_redirect_after(value) == value

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "portfolio",
            "//evil.example.com",
            "/\\evil.example.com",
            "https://evil.example.com",
        ],
    )
    def test_rejected(self, value):
        assert safe_redirect_after(value) is None


class TestOAuthLogin:
    async def test_redirects_to_google(self, client, fake_redis_client, settings):
        resp = await client.get(
            "/api/auth/oauth/login?redirect_after=/portfolio", allow_redirects=False
        )

        assert resp.status == 302
        location = urlparse(resp.headers["Location"])
        query = parse_qs(location.query)
        assert location.netloc == "accounts.google.com"
        assert query["client_id"] == [settings.google_client_id]
        assert query["code_challenge_method"] == ["S256"]

        oauth_state = await validate_state(fake_redis_client, query["state"][0])
        assert oauth_state is not None
        assert oauth_state.redirect_after == "/portfolio"

    async def test_offsite_redirect_after_is_dropped(self, client, fake_redis_client):
        resp = await client.get(
            "/api/auth/oauth/login?redirect_after=//evil.example.com",
            allow_redirects=False,
        )

        state = parse_qs(urlparse(resp.headers["Location"]).query)["state"][0]
        oauth_state = await validate_state(fake_redis_client, state)
        assert oauth_state.redirect_after is None


class TestOAuthLoginUnconfigured:
    @pytest.fixture
    def settings_overrides(self):
        return {"google_client_id": None, "google_client_secret": None}

    async def test_config_error(self, client):
        resp = await client.get("/api/auth/oauth/login", allow_redirects=False)

        assert resp.status == 500
        assert error_code(await resp.json()) == "CONFIG_ERROR"


class TestOAuthCallback:
    async def test_forwards_code_and_state(self, client):
        resp = await client.get(
            "/api/auth/oauth/callback?code=4/0AX4XfWh&state=abc&scope=email",
            allow_redirects=False,
        )

        assert resp.status == 302
        location = urlparse(resp.headers["Location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            "http://localhost:3000/auth/callback"
        )
        assert parse_qs(location.query) == {"code": ["4/0AX4XfWh"], "state": ["abc"]}

    async def test_forwards_error(self, client):
        resp = await client.get(
            "/api/auth/oauth/callback?error=access_denied&state=abc",
            allow_redirects=False,
        )

        query = parse_qs(urlparse(resp.headers["Location"]).query)
        assert query == {"error": ["access_denied"], "state": ["abc"]}


class TestOAuthToken:
    async def test_completes_login(
        self, client, fake_redis_client, session, http_session
    ):
        fake_google(http_session)
        oauth_state, _ = await create_state(
            fake_redis_client, 600, redirect_after="/portfolio"
        )

        resp = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state)
        )

        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["user_email"] == "ada@example.com"
        assert body["redirect_after"] == "/portfolio"
        assert resp.cookies[SESSION_COOKIE].value == body["session_id"]

        user_resp = await client.get(
            "/api/auth/user", headers=cookie_header(body["session_id"])
        )
        assert user_resp.status == 200
        assert (await user_resp.json())["data"]["email"] == "ada@example.com"

        linked_account = (await session.scalars(select(LinkedAccount))).one()
        assert await fake_redis_client.zscore(TOKEN_REFRESH_QUEUE, linked_account.id)
        assert await fake_redis_client.exists(state_key(oauth_state.state)) == 0

    async def test_state_cannot_be_replayed(self, client, fake_redis_client, http_session):
        fake_google(http_session)
        oauth_state, _ = await create_state(fake_redis_client, 600)
        first = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state)
        )
        assert first.status == 200

        second = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state)
        )

        assert second.status == 400
        assert error_code(await second.json()) == "AUTH_OAUTH_ERROR"

    async def test_unknown_state(self, client):
        resp = await client.post("/api/auth/oauth/token", json=token_body("forged"))

        assert resp.status == 400
        body = await resp.json()
        assert body["error"]["code"] == "AUTH_OAUTH_ERROR"
        assert body["error"]["message"] == "Invalid or expired OAuth state"

    async def test_missing_access_token(self, client, fake_redis_client):
        oauth_state, _ = await create_state(fake_redis_client, 600)

        resp = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state, access_token="")
        )

        assert resp.status == 400
        body = await resp.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"][0]["field"] == "access_token"

    async def test_missing_email(self, client, fake_redis_client, http_session):
        oauth_state, _ = await create_state(fake_redis_client, 600)
        user_info = google_user_payload()
        del user_info["email"]
        fake_google(http_session, user_payload=user_info)

        resp = await client.post(
            "/api/auth/oauth/token",
            json=token_body(oauth_state.state, user_info=user_info),
        )

        assert resp.status == 400
        assert (await resp.json())["error"]["message"] == "User email is required"

    async def test_user_info_must_match_google(
        self, client, fake_redis_client, session, http_session
    ):
        await create_user(
            session, username="ada", email="ada@example.com", password="hunter22"
        )
        fake_google(
            http_session, user_payload=google_user_payload(email="mallory@example.com")
        )
        oauth_state, _ = await create_state(fake_redis_client, 600)

        resp = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state)
        )

        assert resp.status == 400
        body = await resp.json()
        assert body["error"]["code"] == "AUTH_OAUTH_ERROR"
        assert body["error"]["message"] == "User info does not match the Google account"
        assert SESSION_COOKIE not in resp.cookies
        assert (await session.scalars(select(LinkedAccount))).all() == []

    async def test_provider_id_must_match_google(
        self, client, fake_redis_client, http_session
    ):
        fake_google(http_session, user_payload=google_user_payload(id="222"))
        oauth_state, _ = await create_state(fake_redis_client, 600)

        resp = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state)
        )

        assert resp.status == 400
        assert error_code(await resp.json()) == "AUTH_OAUTH_ERROR"

    async def test_google_rejects_access_token(
        self, client, fake_redis_client, http_session
    ):
        fake_google(http_session, user_status=401, user_payload={"error": "invalid_token"})
        oauth_state, _ = await create_state(fake_redis_client, 600)

        resp = await client.post(
            "/api/auth/oauth/token", json=token_body(oauth_state.state)
        )

        assert resp.status == 400
        body = await resp.json()
        assert body["error"]["message"] == "Google rejected the access token"
        assert SESSION_COOKIE not in resp.cookies

    async def test_profile_comes_from_google(self, client, fake_redis_client, http_session):
        fake_google(http_session)
        oauth_state, _ = await create_state(fake_redis_client, 600)
        claimed = google_user_payload(name="Someone Else", picture=None)

        resp = await client.post(
            "/api/auth/oauth/token",
            json=token_body(oauth_state.state, user_info=claimed),
        )

        assert resp.status == 200
        user_resp = await client.get(
            "/api/auth/user", headers=cookie_header((await resp.json())["session_id"])
        )
        assert (await user_resp.json())["data"]["name"] == "Ada Lovelace"


class TestOAuthExchange:
    async def test_server_side_exchange(self, client, fake_redis_client, http_session):
        fake_google(http_session)
        oauth_state, _ = await create_state(fake_redis_client, 600)

        resp = await client.post(
            "/api/auth/oauth/exchange",
            json={"code": "4/0AX4XfWh-code", "state": oauth_state.state},
        )

        assert resp.status == 200
        body = await resp.json()
        assert body["user_email"] == "ada@example.com"
        assert body["redirect_after"] is None
        http_session.post.assert_called_once()
        http_session.get.assert_called_once()

    async def test_google_rejects_code(self, client, fake_redis_client, http_session):
        fake_google(http_session, token_status=400, token_payload={"error": "invalid_grant"})
        oauth_state, _ = await create_state(fake_redis_client, 600)

        resp = await client.post(
            "/api/auth/oauth/exchange",
            json={"code": "4/0AX4XfWh-code", "state": oauth_state.state},
        )

        assert resp.status == 502
        assert error_code(await resp.json()) == "EXTERNAL_SERVICE_ERROR"

    async def test_invalid_json(self, client):
        resp = await client.post(
            "/api/auth/oauth/exchange",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert resp.status == 400
        assert (await resp.json())["error"]["message"] == "Invalid JSON body"
