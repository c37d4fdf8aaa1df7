"""
Google OAuth 2.0 client.

The login flow:

1. `GET /api/auth/oauth/login` creates a state with a PKCE verifier (`create_state`), stores it in redis with a
   short TTL and redirects the browser to Google (`build_authorization_url`).
2. Google redirects back to `/api/auth/oauth/callback`, which forwards `code`/`state` (or `error`) to the
   frontend.
3. The frontend finishes the exchange and posts the result to `/api/auth/oauth/token`, or posts the code to
   `/api/auth/oauth/exchange` and lets the server do it (`exchange_code`, `fetch_user_info`). Either way the
   state is consumed so it cannot be replayed.

Refresh tokens issued with `access_type=offline` are used later by the background refresh task
(`refresh_access_token`).
"""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

from aiohttp import ClientSession, FormData
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from redis import asyncio as redis

from finance.tradedash.api.app.config import Settings
from finance.tradedash.api.app.errors import AppError

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = "openid email profile"

OAUTH_STATE_PREFIX = "oauth:state:"
MIN_AUTHORIZATION_CODE_LENGTH = 10


class OAuthState(BaseModel):
    state: str
    verifier: str
    redirect_after: Optional[str] = None
    created_at: datetime


class GoogleTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    token_type: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None


class GoogleUserInfo(BaseModel):
    id: Optional[str] = None
    sub: Optional[str] = None
    email: Optional[str] = None
    email_verified: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("email_verified", "verified_email")
    )
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    locale: Optional[str] = None

    @property
    def provider_user_id(self) -> Optional[str]:
        return self.id or self.sub


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge (RFC 7636).

    Returns:
        (pkce_verifier, pkce_challenge)
    """
    pkce_token = secrets.token_urlsafe(64)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def state_key(state: str) -> str:
    return f"{OAUTH_STATE_PREFIX}{state}"


async def create_state(
    redis_client: redis.Redis,
    ttl: int,
    redirect_after: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[OAuthState, str]:
    """Store a new pending state. Returns the state and the PKCE challenge to send to Google."""
    verifier, challenge = generate_pkce_verifier()
    oauth_state = OAuthState(
        state=secrets.token_urlsafe(32),
        verifier=verifier,
        redirect_after=redirect_after,
        created_at=now or datetime.now(timezone.utc),
    )
    await redis_client.set(
        state_key(oauth_state.state), oauth_state.model_dump_json(), ex=ttl
    )
    return oauth_state, challenge


def _decode_state(raw) -> Optional[OAuthState]:
    if raw is None:
        return None
    try:
        return OAuthState.model_validate_json(raw)
    except ValidationError:
        logger.warning("Discarding unreadable OAuth state")
        return None


async def validate_state(redis_client: redis.Redis, state: str) -> Optional[OAuthState]:
    """Look up a pending state without consuming it."""
    if not state:
        return None
    return _decode_state(await redis_client.get(state_key(state)))


async def consume_state(redis_client: redis.Redis, state: str) -> Optional[OAuthState]:
    """Look up and delete a pending state in one step so it can only be used once."""
    if not state:
        return None
    return _decode_state(await redis_client.getdel(state_key(state)))


async def cleanup_expired_states(redis_client: redis.Redis) -> int:
    """Delete state keys that somehow lost their TTL. Keys with a TTL expire on their own."""
    removed = 0
    async for key in redis_client.scan_iter(match=f"{OAUTH_STATE_PREFIX}*"):
        if await redis_client.ttl(key) == -1:
            await redis_client.delete(key)
            removed += 1
    return removed


def build_authorization_url(settings: Settings, state: str, code_challenge: str) -> str:
    if not settings.google_client_id:
        raise AppError.config("Google OAuth client id is not configured")

    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.google_redirect_uri,
        "response_type": "code",
        "scope": GOOGLE_SCOPES,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{GOOGLE_AUTHORIZATION_ENDPOINT}?{urlencode(params)}"


def build_frontend_callback_url(settings: Settings, params: Dict[str, str]) -> str:
    base = f"{settings.frontend_base_url.rstrip('/')}/auth/callback"
    if not params:
        return base
    return f"{base}?{urlencode(params)}"


def token_request_form(settings: Settings, code: str, verifier: str) -> Dict[str, str]:
    if len(code) < MIN_AUTHORIZATION_CODE_LENGTH:
        raise AppError.oauth("Invalid authorization code")
    if not verifier:
        raise AppError.oauth("Missing PKCE verifier")
    if not settings.google_oauth_configured:
        raise AppError.config("Google OAuth client is not configured")

    return {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": settings.google_redirect_uri,
        "client_id": str(settings.google_client_id),
        "client_secret": str(settings.google_client_secret),
        "code_verifier": verifier,
    }


async def _post_token_endpoint(
    http_session: ClientSession, form: Dict[str, str], action: str
) -> GoogleTokens:
    async with http_session.post(GOOGLE_TOKEN_ENDPOINT, data=FormData(form)) as resp:
        if resp.status != 200:
            body = await resp.text()
            logger.warning("Google %s failed: %s %s", action, resp.status, body)
            raise AppError.external_service(
                f"Google {action} failed", {"status": resp.status}
            )
        payload = await resp.json()

    try:
        return GoogleTokens.model_validate(payload)
    except ValidationError as e:
        raise AppError.external_service(f"Invalid Google {action} response") from e


async def exchange_code(
    http_session: ClientSession, settings: Settings, code: str, verifier: str
) -> GoogleTokens:
    form = token_request_form(settings, code, verifier)
    return await _post_token_endpoint(http_session, form, "token exchange")


async def refresh_access_token(
    http_session: ClientSession, settings: Settings, refresh_token: str
) -> GoogleTokens:
    if not settings.google_oauth_configured:
        raise AppError.config("Google OAuth client is not configured")

    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": str(settings.google_client_id),
        "client_secret": str(settings.google_client_secret),
    }
    return await _post_token_endpoint(http_session, form, "token refresh")


async def fetch_user_info(
    http_session: ClientSession, access_token: str
) -> GoogleUserInfo:
    headers = {"Authorization": f"Bearer {access_token}"}
    async with http_session.get(GOOGLE_USERINFO_ENDPOINT, headers=headers) as resp:
        if resp.status != 200:
            raise AppError.external_service(
                "Failed to fetch Google user info", {"status": resp.status}
            )
        payload = await resp.json()
    return GoogleUserInfo.model_validate(payload)


async def verify_user_info(
    http_session: ClientSession, access_token: str, claimed: GoogleUserInfo
) -> GoogleUserInfo:
    """
    Check client-supplied user info against what Google reports for the access token.

    Returns Google's own user info, which callers should use in place of the claimed one.

    Raises:
        AppError: `oauth` when Google rejects the token or the claimed id or email differs from Google's.
    """
    try:
        google_user_info = await fetch_user_info(http_session, access_token)
    except AppError as e:
        if isinstance(e.details, dict) and e.details.get("status") in (400, 401, 403):
            raise AppError.oauth("Google rejected the access token") from e
        raise

    claimed_id = claimed.provider_user_id
    if claimed_id and claimed_id != google_user_info.provider_user_id:
        raise AppError.oauth("User info does not match the Google account")
    if claimed.email and claimed.email.lower() != (google_user_info.email or "").lower():
        raise AppError.oauth("User info does not match the Google account")
    return google_user_info
