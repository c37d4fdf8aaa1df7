"""
Unit tests for password hashing, bearer tokens and the local account operations.
"""

from datetime import timedelta

import pytest
from argon2 import PasswordHasher
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.auth.jwt import issue_token, verify_token
from finance.tradedash.api.auth.passwords import (
    hash_password,
    needs_rehash,
    verify_password,
)
from finance.tradedash.api.auth.users import (
    authenticate_user,
    create_or_find_user,
    find_user_by_email,
    normalize_email,
    register_user,
    validate_registration,
)
from finance.tradedash.api.model.audit import AuditLog
from tests.test_helpers import create_user, generate_test_datetime


class TestPasswords:
    def test_hash_and_verify(self):
        password_hash = hash_password("hunter22")

        assert password_hash.startswith("$argon2")
        assert verify_password(password_hash, "hunter22")
        assert not verify_password(password_hash, "hunter23")

    def test_hashes_are_salted(self):
        assert hash_password("same-password") != hash_password("same-password")

    def test_malformed_hash(self):
        assert not verify_password("not-a-hash", "whatever")

    def test_fresh_hash_needs_no_rehash(self):
        assert not needs_rehash(hash_password("hunter22"))


class TestBearerTokens:
    def test_round_trip_claims(self):
        now = generate_test_datetime()
        token = issue_token("secret", "user-1", "trader", now=now)

        claims = verify_token("secret", token)

        assert claims.subject == "user-1"
        assert claims.username == "trader"
        assert claims.issued_at == now.replace(microsecond=0)
        assert claims.expires_at == (now + timedelta(hours=24)).replace(microsecond=0)

    def test_token_is_a_jws(self):
        assert issue_token("secret", "user-1", None).count(".") == 2

    def test_wrong_secret(self):
        token = issue_token("secret", "user-1", "trader")

        with pytest.raises(AppError) as exc_info:
            verify_token("other-secret", token)
        assert exc_info.value.code == "AUTH_INVALID_TOKEN"
        assert exc_info.value.status == 401

    def test_expired_token(self):
        issued = generate_test_datetime(-180)
        token = issue_token("secret", "user-1", "trader", now=issued, lifetime=timedelta(hours=1))

        with pytest.raises(AppError) as exc_info:
            verify_token("secret", token)
        assert exc_info.value.message == "Token expired"

    @pytest.mark.parametrize("value", ["", "garbage", "a.b.c"])
    def test_malformed_token(self, value):
        with pytest.raises(AppError) as exc_info:
            verify_token("secret", value)
        assert exc_info.value.code == "AUTH_INVALID_TOKEN"


class TestValidateRegistration:
    def test_accepts_valid_input(self):
        validate_registration("trader", "trader@example.com", "hunter22")

    @pytest.mark.parametrize(
        "username,email,password,message",
        [
            ("", "a@example.com", "hunter22", "Username, email, and password are required"),
            ("trader", " ", "hunter22", "Username, email, and password are required"),
            ("trader", "a@example.com", "", "Username, email, and password are required"),
            ("trader", "a@example.com", "short", "Password must be at least 6 characters long"),
            ("trader", "not-an-email", "hunter22", "Email address is not valid"),
            ("t" * 51, "a@example.com", "hunter22", "Username must be at most 50 characters"),
            (
                "trader",
                "a" * 89 + "@example.com",
                "hunter22",
                "Email must be at most 100 characters",
            ),
        ],
    )
    def test_rejects(self, username, email, password, message):
        with pytest.raises(AppError) as exc_info:
            validate_registration(username, email, password)
        assert exc_info.value.code == "VALIDATION_ERROR"
        assert exc_info.value.message == message

    def test_normalize_email(self):
        assert normalize_email("  Ada@Example.COM ") == "ada@example.com"


class TestRegisterUser:
    async def test_register(self, session: AsyncSession):
        now = generate_test_datetime()
        async with session.begin():
            user = await register_user(
                session, " trader ", "Trader@Example.com", "hunter22", now, "10.0.0.1"
            )

        assert user.username == "trader"
        assert user.email == "trader@example.com"
        assert user.display_name == "trader"
        assert user.is_verified is False
        assert verify_password(user.password_hash, "hunter22")

        events = (await session.scalars(select(AuditLog.event))).all()
        assert events == ["account_create"]

    async def test_duplicate_username_or_email(self, session: AsyncSession):
        await create_user(session)

        for username, email in (
            ("trader", "new@example.com"),
            ("someone", "TRADER@example.com"),
        ):
            with pytest.raises(AppError) as exc_info:
                async with session.begin():
                    await register_user(
                        session, username, email, "hunter22", generate_test_datetime()
                    )
            assert exc_info.value.message == "Username or email already exists"


class TestAuthenticateUser:
    async def test_by_username_and_by_email(self, session: AsyncSession):
        await create_user(session, password="hunter22")

        for identifier in ("trader", "TRADER@example.com"):
            async with session.begin():
                user = await authenticate_user(
                    session, identifier, "hunter22", generate_test_datetime()
                )
            assert user is not None
            assert user.last_login_at is not None

    async def test_outdated_hash_is_upgraded(self, session: AsyncSession):
        weak_hash = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1).hash("hunter22")
        await create_user(session, password_hash=weak_hash)
        assert needs_rehash(weak_hash)

        async with session.begin():
            user = await authenticate_user(
                session, "trader", "hunter22", generate_test_datetime()
            )

        assert user.password_hash != weak_hash
        assert not needs_rehash(user.password_hash)
        assert verify_password(user.password_hash, "hunter22")

    async def test_wrong_password_is_audited(self, session: AsyncSession):
        created = await create_user(session, password="hunter22")

        async with session.begin():
            user = await authenticate_user(
                session, "trader", "wrong", generate_test_datetime(), "10.0.0.9"
            )

        assert user is None
        entry = (await session.scalars(select(AuditLog))).one()
        assert entry.event == "login_failed"
        assert entry.user_id == created.id
        assert entry.success is False

    async def test_unknown_user(self, session: AsyncSession):
        async with session.begin():
            user = await authenticate_user(
                session, "nobody", "hunter22", generate_test_datetime()
            )
        assert user is None

    async def test_oauth_only_user_cannot_password_login(self, session: AsyncSession):
        await create_user(session, username=None)

        async with session.begin():
            user = await authenticate_user(
                session, "trader@example.com", "", generate_test_datetime()
            )
        assert user is None


class TestCreateOrFindUser:
    async def test_creates_user(self, session: AsyncSession):
        now = generate_test_datetime()
        async with session.begin():
            user = await create_or_find_user(
                session,
                "Ada@Example.com",
                now,
                display_name="Ada Lovelace",
                first_name="Ada",
                avatar_url="https://example.com/ada.png",
                is_verified=True,
            )

        assert user.email == "ada@example.com"
        assert user.username is None
        assert user.password_hash is None
        assert user.is_verified is True
        assert user.last_login_at == now

    async def test_finds_existing_user_and_fills_blanks(self, session: AsyncSession):
        existing = await create_user(
            session, email="ada@example.com", display_name="Countess", avatar_url=None
        )

        async with session.begin():
            user = await create_or_find_user(
                session,
                "ADA@example.com",
                generate_test_datetime(),
                display_name="Ada Lovelace",
                avatar_url="https://example.com/ada.png",
            )

        assert user.id == existing.id
        assert user.display_name == "Countess"
        assert user.avatar_url == "https://example.com/ada.png"

    async def test_find_user_by_email_is_case_insensitive(self, session: AsyncSession):
        existing = await create_user(session)

        found = await find_user_by_email(session, " Trader@EXAMPLE.com")

        assert found is not None
        assert found.id == existing.id
