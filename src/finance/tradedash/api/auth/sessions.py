"""
Browser sessions.

A session is a `sessions` row plus a `TokenType.SESSION` token. The browser holds a `session_id` cookie of the
form `<user_id>:<token_id>`; the token id is the unguessable part.

Only one session per user is kept: creating a session removes the user's previous sessions and session tokens.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from aiohttp import web
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from finance.tradedash.api.app.config import Settings
from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.model.audit import AuditEvent, record_audit_event
from finance.tradedash.api.model.sessions import UserSession
from finance.tradedash.api.model.tokens import Token, TokenType
from finance.tradedash.api.model.users import User

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_id"


@dataclass(frozen=True)
class SessionIdentity:
    user_id: str
    token_id: str

    @property
    def cookie_value(self) -> str:
        return f"{self.user_id}:{self.token_id}"


def parse_session_cookie(value: Optional[str]) -> SessionIdentity:
    if not value:
        raise AppError.session("No session cookie")
    user_id, sep, token_id = value.strip().partition(":")
    if not sep or not user_id or not token_id or ":" in token_id:
        raise AppError.session("Malformed session cookie")
    return SessionIdentity(user_id=user_id, token_id=token_id)


def set_session_cookie(
    response: web.StreamResponse, settings: Settings, identity: SessionIdentity
) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        identity.cookie_value,
        path="/",
        max_age=settings.session_expiry,
        httponly=True,
        samesite="Lax",
        secure=not settings.is_development,
    )


def clear_session_cookie(response: web.StreamResponse, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        "",
        path="/",
        max_age=0,
        httponly=True,
        samesite="Lax",
        secure=not settings.is_development,
    )


async def create_session(
    database_session: AsyncSession,
    user: User,
    now: datetime,
    lifetime: timedelta,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Tuple[UserSession, Token]:
    """
    Replace the user's session with a new one. The caller commits.
    """
    await database_session.execute(
        delete(UserSession).where(UserSession.user_id == user.id)
    )
    await database_session.execute(
        delete(Token).where(
            Token.user_id == user.id, Token.token_type == int(TokenType.SESSION)
        )
    )

    expires_at = now + lifetime
    token = Token(
        id=str(ULID()),
        user_id=user.id,
        linked_account_id=None,
        token_type=int(TokenType.SESSION),
        token_value=secrets.token_urlsafe(32),
        expires_at=expires_at,
        created_at=now,
    )
    database_session.add(token)
    await database_session.flush()

    user_session = UserSession(
        session_id=str(ULID()),
        user_id=user.id,
        token_id=token.id,
        user_agent=(user_agent or "")[:512] or None,
        ip_address=ip_address,
        expires_at=expires_at,
        created_at=now,
        last_activity_at=now,
    )
    database_session.add(user_session)
    record_audit_event(database_session, AuditEvent.LOGIN, now, user.id, ip_address)
    logger.debug("Created session %s for user %s", user_session.session_id, user.id)
    return user_session, token


async def validate_session(
    database_session: AsyncSession, identity: SessionIdentity, now: datetime
) -> Tuple[User, UserSession]:
    """
    Resolve a session cookie to its user and mark the session as active.

    Raises:
        AppError: `session` when the token or session is missing, expired or belongs to someone else.
    """
    token: Optional[Token] = await database_session.get(Token, identity.token_id)
    if (
        token is None
        or token.user_id != identity.user_id
        or token.token_type != int(TokenType.SESSION)
    ):
        raise AppError.session("Invalid session")
    if token.expires_at is not None and token.expires_at <= now:
        raise AppError.session("Session expired")

    session_stmt = select(UserSession).where(UserSession.token_id == token.id)
    user_session: Optional[UserSession] = (
        await database_session.scalars(session_stmt)
    ).first()
    if user_session is None or user_session.expires_at <= now:
        raise AppError.session("Session expired")

    user = await database_session.get(User, identity.user_id)
    if user is None:
        raise AppError.session("Invalid session")

    token.last_used_at = now
    user_session.last_activity_at = now
    return user, user_session


async def revoke_session(
    database_session: AsyncSession,
    identity: SessionIdentity,
    now: datetime,
    ip_address: Optional[str] = None,
) -> bool:
    """Delete the session behind a cookie. Returns False when there was nothing to delete."""
    token: Optional[Token] = await database_session.get(Token, identity.token_id)
    if token is None or token.user_id != identity.user_id:
        return False

    await database_session.execute(
        delete(UserSession).where(UserSession.token_id == token.id)
    )
    await database_session.execute(delete(Token).where(Token.id == token.id))
    record_audit_event(
        database_session, AuditEvent.LOGOUT, now, identity.user_id, ip_address
    )
    return True


async def list_sessions(
    database_session: AsyncSession, user_id: str, now: datetime
) -> List[UserSession]:
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id, UserSession.expires_at > now)
        .order_by(UserSession.created_at.desc())
    )
    return list((await database_session.scalars(stmt)).all())


async def cleanup_expired_sessions(
    database_session: AsyncSession, now: datetime
) -> Tuple[int, int]:
    """Delete expired sessions and expired tokens. Returns (sessions_removed, tokens_removed)."""
    sessions_result = await database_session.execute(
        delete(UserSession).where(UserSession.expires_at < now)
    )
    tokens_result = await database_session.execute(
        delete(Token).where(Token.expires_at.is_not(None), Token.expires_at < now)
    )
    return sessions_result.rowcount, tokens_result.rowcount
