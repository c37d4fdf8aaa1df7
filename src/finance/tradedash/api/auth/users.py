"""
User account operations.

These functions work inside the caller's transaction: they add and query rows on the given `AsyncSession` but
never commit. Handlers wrap them in `async with database_session.begin():`.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.auth.passwords import (
    MIN_PASSWORD_LENGTH,
    hash_password,
    needs_rehash,
    verify_password,
)
from finance.tradedash.api.model.audit import AuditEvent, record_audit_event
from finance.tradedash.api.model.users import User

logger = logging.getLogger(__name__)

MAX_USERNAME_LENGTH = 50
MAX_EMAIL_LENGTH = 100


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_registration(username: str, email: str, password: str) -> None:
    if not username.strip() or not email.strip() or not password:
        raise AppError.validation("Username, email, and password are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AppError.validation(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if len(username.strip()) > MAX_USERNAME_LENGTH:
        raise AppError.validation(
            f"Username must be at most {MAX_USERNAME_LENGTH} characters"
        )
    if len(normalize_email(email)) > MAX_EMAIL_LENGTH:
        raise AppError.validation(f"Email must be at most {MAX_EMAIL_LENGTH} characters")
    if "@" not in email:
        raise AppError.validation("Email address is not valid")


async def get_user(database_session: AsyncSession, user_id: str) -> Optional[User]:
    return await database_session.get(User, user_id)


async def find_user_by_email(
    database_session: AsyncSession, email: str
) -> Optional[User]:
    stmt = select(User).where(func.lower(User.email) == normalize_email(email))
    return (await database_session.scalars(stmt)).first()


async def register_user(
    database_session: AsyncSession,
    username: str,
    email: str,
    password: str,
    now: datetime,
    ip_address: Optional[str] = None,
) -> User:
    """
    Create a local account.

    Raises:
        AppError: `validation` for missing or weak input, `bad_request` when the username or email is taken.
    """
    validate_registration(username, email, password)
    username = username.strip()
    email = normalize_email(email)

    existing_stmt = select(User.id).where(
        or_(User.username == username, func.lower(User.email) == email)
    )
    if (await database_session.scalars(existing_stmt)).first() is not None:
        raise AppError.bad_request("Username or email already exists")

    user = User(
        id=str(ULID()),
        username=username,
        email=email,
        password_hash=hash_password(password),
        display_name=username,
        is_verified=False,
        created_at=now,
        updated_at=now,
    )
    database_session.add(user)
    await database_session.flush()

    record_audit_event(
        database_session, AuditEvent.ACCOUNT_CREATE, now, user.id, ip_address
    )
    logger.info("Registered user %s", user.id)
    return user


async def authenticate_user(
    database_session: AsyncSession,
    username: str,
    password: str,
    now: datetime,
    ip_address: Optional[str] = None,
) -> Optional[User]:
    """
    Check a username (or email) and password. Both outcomes are written to the audit log. A hash made with
    older argon2 parameters is replaced on a successful login.

    Returns the user on success and None otherwise.
    """
    identifier = username.strip()
    stmt = select(User).where(
        or_(User.username == identifier, func.lower(User.email) == identifier.lower())
    )
    user: Optional[User] = (await database_session.scalars(stmt)).first()

    if (
        user is None
        or user.password_hash is None
        or not verify_password(user.password_hash, password)
    ):
        record_audit_event(
            database_session,
            AuditEvent.LOGIN_FAILED,
            now,
            user.id if user is not None else None,
            ip_address,
            success=False,
        )
        return None

    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
    user.last_login_at = now
    user.updated_at = now
    record_audit_event(database_session, AuditEvent.LOGIN, now, user.id, ip_address)
    return user


async def create_or_find_user(
    database_session: AsyncSession,
    email: str,
    now: datetime,
    display_name: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    avatar_url: Optional[str] = None,
    is_verified: bool = False,
) -> User:
    """
    Return the user owning `email`, creating one when none exists.

    For an existing user the login time is bumped and blank profile fields are filled from the provider's
    profile. Values the user already has are kept.
    """
    user = await find_user_by_email(database_session, email)
    if user is not None:
        user.last_login_at = now
        user.updated_at = now
        user.display_name = user.display_name or display_name
        user.first_name = user.first_name or first_name
        user.last_name = user.last_name or last_name
        user.avatar_url = user.avatar_url or avatar_url
        user.is_verified = user.is_verified or is_verified
        return user

    user = User(
        id=str(ULID()),
        username=None,
        email=normalize_email(email),
        password_hash=None,
        display_name=display_name,
        first_name=first_name,
        last_name=last_name,
        avatar_url=avatar_url,
        is_verified=is_verified,
        created_at=now,
        updated_at=now,
        last_login_at=now,
    )
    database_session.add(user)
    await database_session.flush()
    record_audit_event(database_session, AuditEvent.ACCOUNT_CREATE, now, user.id)
    logger.info("Created user %s from OAuth profile", user.id)
    return user
