"""
Linked provider accounts and their stored credentials.

Provider access and refresh tokens are kept in the `tokens` table encrypted with the configured Fernet key.
After a Google login the linked account id is put on the refresh queue so the background task can renew the
access token before it expires.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from aiohttp import ClientSession
from cryptography.fernet import Fernet, InvalidToken
from redis import asyncio as redis
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from ulid import ULID

from finance.tradedash.api.app.config import TOKEN_REFRESH_QUEUE, Settings
from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.auth.oauth import (
    GoogleTokens,
    GoogleUserInfo,
    refresh_access_token,
)
from finance.tradedash.api.auth.sessions import SessionIdentity, create_session
from finance.tradedash.api.auth.users import MAX_EMAIL_LENGTH, create_or_find_user
from finance.tradedash.api.model.audit import AuditEvent, record_audit_event
from finance.tradedash.api.model.providers import ProviderType
from finance.tradedash.api.model.sessions import UserSession
from finance.tradedash.api.model.tokens import Token, TokenType
from finance.tradedash.api.model.users import LinkedAccount, User

logger = logging.getLogger(__name__)


@dataclass
class CompletedLogin:
    user: User
    linked_account: LinkedAccount
    session: UserSession
    identity: SessionIdentity
    access_token_expires_at: datetime


async def upsert_linked_account(
    database_session: AsyncSession,
    user: User,
    provider: ProviderType,
    user_info: GoogleUserInfo,
    now: datetime,
) -> LinkedAccount:
    provider_user_id = user_info.provider_user_id
    if not provider_user_id:
        raise AppError.validation("Provider user id is required")

    stmt = select(LinkedAccount).where(
        LinkedAccount.provider_id == int(provider),
        LinkedAccount.provider_user_id == provider_user_id,
    )
    linked_account: Optional[LinkedAccount] = (
        await database_session.scalars(stmt)
    ).first()

    profile = user_info.model_dump(exclude_none=True)

    if linked_account is None:
        linked_account = LinkedAccount(
            id=str(ULID()),
            user_id=user.id,
            provider_id=int(provider),
            provider_user_id=provider_user_id,
            connected_at=now,
        )
        database_session.add(linked_account)
    elif linked_account.user_id != user.id:
        raise AppError.forbidden("Provider account is linked to a different user")

    linked_account.provider_email = user_info.email
    linked_account.provider_display_name = user_info.name
    linked_account.provider_avatar_url = user_info.picture
    linked_account.provider_profile_data = profile
    linked_account.is_active = True
    linked_account.last_login_at = now
    linked_account.updated_at = now
    await database_session.flush()
    return linked_account


def encrypt_token(encryption_key: Fernet, value: str) -> str:
    return encryption_key.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_token(encryption_key: Fernet, value: str) -> str:
    try:
        return encryption_key.decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise AppError.internal("Stored provider token could not be decrypted") from e


async def store_provider_tokens(
    database_session: AsyncSession,
    encryption_key: Fernet,
    linked_account: LinkedAccount,
    tokens: GoogleTokens,
    now: datetime,
) -> datetime:
    """
    Replace the stored provider tokens for a linked account.

    A refresh is only replaced when the provider sent a new one; Google omits it on refresh grants.
    Returns the access token expiry.
    """
    replaced_types = [int(TokenType.OAUTH_ACCESS)]
    if tokens.refresh_token:
        replaced_types.append(int(TokenType.OAUTH_REFRESH))

    await database_session.execute(
        delete(Token).where(
            Token.linked_account_id == linked_account.id,
            Token.token_type.in_(replaced_types),
        )
    )

    access_expires_at = now + timedelta(seconds=tokens.expires_in)
    database_session.add(
        Token(
            id=str(ULID()),
            user_id=linked_account.user_id,
            linked_account_id=linked_account.id,
            token_type=int(TokenType.OAUTH_ACCESS),
            token_value=encrypt_token(encryption_key, tokens.access_token),
            expires_at=access_expires_at,
            created_at=now,
        )
    )
    if tokens.refresh_token:
        database_session.add(
            Token(
                id=str(ULID()),
                user_id=linked_account.user_id,
                linked_account_id=linked_account.id,
                token_type=int(TokenType.OAUTH_REFRESH),
                token_value=encrypt_token(encryption_key, tokens.refresh_token),
                expires_at=None,
                created_at=now,
            )
        )
    record_audit_event(
        database_session, AuditEvent.TOKEN_CREATE, now, linked_account.user_id
    )
    return access_expires_at


async def load_provider_token(
    database_session: AsyncSession,
    encryption_key: Fernet,
    linked_account_id: str,
    token_type: TokenType,
) -> Optional[str]:
    stmt = (
        select(Token)
        .where(
            Token.linked_account_id == linked_account_id,
            Token.token_type == int(token_type),
        )
        .order_by(Token.created_at.desc())
    )
    token: Optional[Token] = (await database_session.scalars(stmt)).first()
    if token is None:
        return None
    return decrypt_token(encryption_key, token.token_value)


async def schedule_token_refresh(
    redis_client: redis.Redis,
    settings: Settings,
    linked_account_id: str,
    now: datetime,
    expires_in: int,
) -> datetime:
    """Queue a refresh at `token_refresh_before_expiry_ratio` of the access token lifetime."""
    refresh_at = now + timedelta(
        seconds=expires_in * settings.token_refresh_before_expiry_ratio
    )
    await redis_client.zadd(
        TOKEN_REFRESH_QUEUE, {linked_account_id: int(refresh_at.timestamp())}
    )
    return refresh_at


async def complete_google_login(
    database_session: AsyncSession,
    settings: Settings,
    user_info: GoogleUserInfo,
    tokens: GoogleTokens,
    now: datetime,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> CompletedLogin:
    """
    Turn a verified Google identity into a dashboard session.

    Finds or creates the user by email, links the Google account, stores the provider tokens and replaces the
    user's session. The caller commits and then schedules the token refresh.
    """
    if not user_info.email:
        raise AppError.validation("User email is required")
    if len(user_info.email) > MAX_EMAIL_LENGTH:
        raise AppError.validation(f"Email must be at most {MAX_EMAIL_LENGTH} characters")
    if not user_info.provider_user_id:
        raise AppError.validation("User id is required")

    user = await create_or_find_user(
        database_session,
        user_info.email,
        now,
        display_name=user_info.name,
        first_name=user_info.given_name,
        last_name=user_info.family_name,
        avatar_url=user_info.picture,
        is_verified=bool(user_info.email_verified),
    )
    linked_account = await upsert_linked_account(
        database_session, user, ProviderType.GOOGLE, user_info, now
    )
    access_expires_at = await store_provider_tokens(
        database_session, settings.encryption_key, linked_account, tokens, now
    )
    user_session, token = await create_session(
        database_session,
        user,
        now,
        settings.session_lifetime,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    return CompletedLogin(
        user=user,
        linked_account=linked_account,
        session=user_session,
        identity=SessionIdentity(user_id=user.id, token_id=token.id),
        access_token_expires_at=access_expires_at,
    )


async def refresh_linked_account(
    settings: Settings,
    http_session: ClientSession,
    database_session: AsyncSession,
    redis_client: redis.Redis,
    linked_account_id: str,
    now: datetime,
) -> Optional[datetime]:
    """
    Renew the Google access token of a linked account and queue the next refresh.

    Returns the new access token expiry, or None when the account is gone, inactive or has no refresh token.
    Errors from Google propagate so the caller can retry.
    """
    async with database_session.begin():
        linked_account: Optional[LinkedAccount] = await database_session.get(
            LinkedAccount, linked_account_id
        )
        if linked_account is None or not linked_account.is_active:
            logger.info("Skipping refresh for inactive account %s", linked_account_id)
            return None
        refresh_token = await load_provider_token(
            database_session,
            settings.encryption_key,
            linked_account_id,
            TokenType.OAUTH_REFRESH,
        )

    if refresh_token is None:
        logger.info("No refresh token stored for account %s", linked_account_id)
        return None

    tokens = await refresh_access_token(http_session, settings, refresh_token)

    async with database_session.begin():
        access_expires_at = await store_provider_tokens(
            database_session, settings.encryption_key, linked_account, tokens, now
        )

    await schedule_token_refresh(
        redis_client, settings, linked_account_id, now, tokens.expires_in
    )
    return access_expires_at
