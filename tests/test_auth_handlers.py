"""
Tests for username and password authentication: /api/auth/register, /api/auth/login and /api/auth/me.
"""

import json
from datetime import timedelta

import pytest
from jwcrypto.common import base64url_decode

from finance.tradedash.api.app.config import Settings
from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.auth.jwt import issue_token, signing_key, verify_token
from tests.test_helpers import create_user, error_code, generate_test_datetime


REGISTRATION = {
    "username": "trader",
    "email": "trader@example.com",
    "password": "hunter22",
}


class TestRegister:
    async def test_register(self, client, settings):
        resp = await client.post("/api/auth/register", json=REGISTRATION)

        assert resp.status == 201
        body = await resp.json()
        assert body["success"] is True
        assert body["message"] == "User registered successfully"
        assert body["user"]["username"] == "trader"
        assert body["user"]["email"] == "trader@example.com"
        assert verify_token(settings.jwt_secret, body["token"]).subject == body["user"]["id"]

    async def test_duplicate(self, client):
        await client.post("/api/auth/register", json=REGISTRATION)

        resp = await client.post(
            "/api/auth/register", json=dict(REGISTRATION, email="other@example.com")
        )

        assert resp.status == 400
        body = await resp.json()
        assert body == {
            "success": False,
            "message": "Username or email already exists",
            "user": None,
            "token": None,
        }

    async def test_missing_fields(self, client):
        resp = await client.post("/api/auth/register", json={"username": "trader"})

        assert resp.status == 400
        body = await resp.json()
        assert body["success"] is False
        assert body["message"] == "Username, email, and password are required"

    async def test_short_password(self, client):
        resp = await client.post(
            "/api/auth/register", json=dict(REGISTRATION, password="abc")
        )

        assert resp.status == 400
        assert (await resp.json())["message"] == (
            "Password must be at least 6 characters long"
        )

    @pytest.mark.parametrize(
        "field,value,message",
        [
            ("username", "t" * 51, "Username must be at most 50 characters"),
            ("email", "a" * 89 + "@example.com", "Email must be at most 100 characters"),
        ],
    )
    async def test_oversized_fields(self, client, field, value, message):
        resp = await client.post(
            "/api/auth/register", json=dict(REGISTRATION, **{field: value})
        )

        assert resp.status == 400
        assert (await resp.json())["message"] == message

    async def test_invalid_json(self, client):
        resp = await client.post(
            "/api/auth/register",
            data="not json",
            headers={"Content-Type": "application/json"},
        )

        assert resp.status == 400
        assert (await resp.json())["success"] is False


class TestLogin:
    async def test_login(self, client, session, settings):
        user = await create_user(session, password="hunter22")

        resp = await client.post(
            "/api/auth/login", json={"username": "trader", "password": "hunter22"}
        )

        assert resp.status == 200
        body = await resp.json()
        assert body["message"] == "Login successful"
        assert body["user"] == {
            "id": user.id,
            "username": "trader",
            "email": "trader@example.com",
        }
        assert verify_token(settings.jwt_secret, body["token"]).username == "trader"

    async def test_login_with_email(self, client, session):
        await create_user(session, password="hunter22")

        resp = await client.post(
            "/api/auth/login",
            json={"username": "trader@example.com", "password": "hunter22"},
        )

        assert resp.status == 200

    async def test_wrong_password(self, client, session):
        await create_user(session, password="hunter22")

        resp = await client.post(
            "/api/auth/login", json={"username": "trader", "password": "nope"}
        )

        assert resp.status == 401
        body = await resp.json()
        assert body["success"] is False
        assert body["message"] == "Invalid credentials"
        assert body["token"] is None

    async def test_missing_fields(self, client):
        resp = await client.post("/api/auth/login", json={"username": "trader"})

        assert resp.status == 400
        assert (await resp.json())["message"] == "Username and password are required"


class TestMe:
    async def test_me(self, client, session, settings):
        user = await create_user(session)
        token = issue_token(settings.jwt_secret, user.id, user.username)

        resp = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status == 200
        assert await resp.json() == {"success": True, "user": user.public_dict()}

    async def test_missing_token(self, client):
        resp = await client.get("/api/auth/me")

        assert resp.status == 401
        assert error_code(await resp.json()) == "AUTH_MISSING_TOKEN"

    async def test_wrong_scheme(self, client):
        resp = await client.get("/api/auth/me", headers={"Authorization": "Basic abc"})

        assert resp.status == 401
        assert error_code(await resp.json()) == "AUTH_MISSING_TOKEN"

    async def test_expired_token(self, client, session, settings):
        user = await create_user(session)
        token = issue_token(
            settings.jwt_secret,
            user.id,
            user.username,
            now=generate_test_datetime(-180),
            lifetime=timedelta(hours=1),
        )

        resp = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status == 401
        body = await resp.json()
        assert body["error"]["code"] == "AUTH_INVALID_TOKEN"
        assert body["error"]["message"] == "Token expired"

    async def test_deleted_user(self, client, settings):
        token = issue_token(settings.jwt_secret, "01HZZZZZZZZZZZZZZZZZZZZZZZ", "ghost")

        resp = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status == 401
        assert error_code(await resp.json()) == "AUTH_INVALID_TOKEN"


class TestSigningKey:
    @pytest.mark.parametrize("secret", ["x", "short", "a" * 100])
    def test_key_is_always_256_bits(self, secret):
        key = json.loads(signing_key(secret).export())

        assert len(base64url_decode(key["k"])) == 32

    def test_default_secret_round_trip(self):
        secret = Settings(worker_id="w").jwt_secret

        token = issue_token(secret, "user-1", "trader")

        assert verify_token(secret, token).subject == "user-1"

    def test_other_secret_is_rejected(self):
        token = issue_token("first-secret", "user-1", "trader")

        with pytest.raises(AppError) as excinfo:
            verify_token("second-secret", token)
        assert excinfo.value.code == "AUTH_INVALID_TOKEN"


class TestShortSecret:
    @pytest.fixture
    def settings_overrides(self):
        return {"jwt_secret": "short"}

    async def test_register_and_me(self, client):
        resp = await client.post("/api/auth/register", json=REGISTRATION)

        assert resp.status == 201
        token = (await resp.json())["token"]

        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status == 200
