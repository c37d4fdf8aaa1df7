"""
Common testing utilities.

Provides reusable functions for model CRUD checks, user fixtures and a fake Google HTTP session so individual
test files stay short.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Type
from unittest.mock import Mock

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from finance.tradedash.api.auth.passwords import hash_password
from finance.tradedash.api.model.base import Base
from finance.tradedash.api.model.users import User


def generate_ulid_string() -> str:
    """Generate a ULID string for testing."""
    return str(ULID())


def generate_test_datetime(offset_minutes: int = 0) -> datetime:
    """Generate a timezone-aware datetime for testing."""
    return datetime.now(timezone.utc) + timedelta(minutes=offset_minutes)


def assert_model_fields_match(
    model_instance: Base, expected_data: Dict[str, Any]
) -> None:
    """Assert that all fields in expected_data match the model instance."""
    for field_name, expected_value in expected_data.items():
        actual_value = getattr(model_instance, field_name)
        assert (
            actual_value == expected_value
        ), f"Field {field_name}: expected {expected_value}, got {actual_value}"


async def create_and_verify_record(
    session: AsyncSession,
    model_class: Type[Base],
    data: Dict[str, Any],
    primary_key_field: str,
) -> Base:
    """Create a record and verify it reads back unchanged."""
    record = model_class(**data)
    session.add(record)
    await session.commit()
    session.expunge_all()

    primary_key_value = data[primary_key_field]
    result = await session.execute(
        select(model_class).where(
            getattr(model_class, primary_key_field) == primary_key_value
        )
    )
    retrieved_record = result.scalar_one()

    assert_model_fields_match(retrieved_record, data)
    return retrieved_record


async def assert_read_nonexistent_record(
    session: AsyncSession,
    model_class: Type[Base],
    primary_key_field: str,
    nonexistent_key_value: str = "nonexistent-key",
) -> None:
    """Test reading a nonexistent record returns None."""
    result = await session.execute(
        select(model_class).where(
            getattr(model_class, primary_key_field) == nonexistent_key_value
        )
    )
    assert result.scalar_one_or_none() is None


async def assert_delete_record(
    session: AsyncSession,
    model_class: Type[Base],
    data: Dict[str, Any],
    primary_key_field: str,
) -> None:
    """Test deleting a record."""
    session.add(model_class(**data))
    await session.commit()

    primary_key_value = data[primary_key_field]
    await session.execute(
        delete(model_class).where(
            getattr(model_class, primary_key_field) == primary_key_value
        )
    )
    await session.commit()

    await assert_read_nonexistent_record(
        session, model_class, primary_key_field, primary_key_value
    )


def user_data(**overrides) -> Dict[str, Any]:
    now = generate_test_datetime()
    data: Dict[str, Any] = {
        "id": generate_ulid_string(),
        "username": "trader",
        "email": "trader@example.com",
        "password_hash": None,
        "display_name": "Trader",
        "is_verified": False,
        "created_at": now,
        "updated_at": now,
    }
    data.update(overrides)
    return data


async def create_user(
    session: AsyncSession, password: Optional[str] = None, **overrides
) -> User:
    data = user_data(**overrides)
    if password is not None:
        data["password_hash"] = hash_password(password)
    user = User(**data)
    session.add(user)
    await session.commit()
    return user


class FakeResponse:
    """Async context manager shaped like an aiohttp ClientResponse."""

    def __init__(self, status: int, payload: Any):
        self.status = status
        self.payload = payload

    async def json(self) -> Any:
        return self.payload

    async def text(self) -> str:
        return json.dumps(self.payload)

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


def google_token_payload(**overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "access_token": "ya29.access-token",
        "refresh_token": "1//refresh-token",
        "expires_in": 3599,
        "token_type": "Bearer",
        "scope": "openid email profile",
    }
    payload.update(overrides)
    return payload


def google_user_payload(**overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": "109876543210987654321",
        "email": "ada@example.com",
        "verified_email": True,
        "name": "Ada Lovelace",
        "given_name": "Ada",
        "family_name": "Lovelace",
        "picture": "https://lh3.googleusercontent.com/a/ada",
        "locale": "en",
    }
    payload.update(overrides)
    return payload


def fake_google(
    http_session: Mock,
    token_status: int = 200,
    token_payload: Optional[Dict[str, Any]] = None,
    user_status: int = 200,
    user_payload: Optional[Dict[str, Any]] = None,
) -> Mock:
    """Point `http_session.post`/`.get` at canned Google token and userinfo responses."""
    http_session.post = Mock(
        return_value=FakeResponse(token_status, token_payload or google_token_payload())
    )
    http_session.get = Mock(
        return_value=FakeResponse(user_status, user_payload or google_user_payload())
    )
    return http_session


def error_code(body: Dict[str, Any]) -> str:
    assert body["success"] is False
    return body["error"]["code"]


def cookie_header(value: str) -> Dict[str, str]:
    return {"Cookie": f"session_id={value}"}