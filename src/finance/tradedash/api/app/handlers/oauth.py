"""
Google OAuth and Session Handlers

OAuth flow with Google:
1. The dashboard sends the browser to GET /api/auth/oauth/login
2. The login handler stores a state and PKCE verifier in redis and redirects to Google
3. Google redirects back to GET /api/auth/oauth/callback with `code` and `state` (or `error`)
4. The callback forwards those parameters to the frontend's /auth/callback page
5. The frontend completes the login with POST /api/auth/oauth/token (it already holds Google's tokens) or
   POST /api/auth/oauth/exchange (the server exchanges the code). Claimed user info is checked against Google
6. Either way the state is consumed, the user and linked account are stored, a session cookie is set and the
   provider access token is queued for refresh

Session endpoints:
- GET /api/auth/user - The user behind the session cookie
- POST /api/auth/logout - Revoke the session and clear the cookie
- GET /api/auth/sessions - The user's active sessions
"""

import logging
from typing import Optional

from aiohttp import web
from pydantic import BaseModel, Field

from finance.tradedash.api.app.config import (
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from finance.tradedash.api.app.errors import AppError, api_response, utc_now
from finance.tradedash.api.app.handlers.helpers import (
    client_ip,
    parse_json_body,
    session_identity,
    user_agent,
)
from finance.tradedash.api.auth.accounts import (
    complete_google_login,
    schedule_token_refresh,
)
from finance.tradedash.api.auth.oauth import (
    GoogleTokens,
    GoogleUserInfo,
    OAuthState,
    build_authorization_url,
    build_frontend_callback_url,
    consume_state,
    create_state,
    exchange_code,
    fetch_user_info,
    verify_user_info,
)
from finance.tradedash.api.auth.sessions import (
    clear_session_cookie,
    list_sessions,
    revoke_session,
    set_session_cookie,
    validate_session,
)

logger = logging.getLogger(__name__)

CALLBACK_FORWARDED_PARAMS = ("code", "state", "error", "error_description")


class OAuthTokenRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)
    state: str
    code: Optional[str] = None
    user_info: GoogleUserInfo


class OAuthExchangeRequest(BaseModel):
    code: str
    state: str


def safe_redirect_after(value: Optional[str]) -> Optional[str]:
    """Return `value` if it is a path on this site, otherwise None."""
    if not value or not value.startswith("/") or value[1:2] in ("/", "\\"):
        return None
    return value


async def handle_oauth_login(request: web.Request):
    settings = request.app[SettingsAppKey]
    redis_client = request.app[RedisClientAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    if not settings.google_oauth_configured:
        raise AppError.config("Google OAuth is not configured")

    oauth_state, code_challenge = await create_state(
        redis_client,
        settings.oauth_state_ttl,
        redirect_after=safe_redirect_after(request.query.get("redirect_after")),
        now=utc_now(),
    )
    metrics_client.increment("auth.oauth.login", 1)
    raise web.HTTPFound(
        build_authorization_url(settings, oauth_state.state, code_challenge)
    )


async def handle_oauth_callback(request: web.Request):
    settings = request.app[SettingsAppKey]

    params = {
        name: request.query[name]
        for name in CALLBACK_FORWARDED_PARAMS
        if request.query.get(name)
    }
    if "error" in params:
        logger.info("Google returned an OAuth error: %s", params["error"])

    raise web.HTTPFound(build_frontend_callback_url(settings, params))


async def _complete_login(
    request: web.Request,
    oauth_state: OAuthState,
    tokens: GoogleTokens,
    user_info: GoogleUserInfo,
) -> web.Response:
    settings = request.app[SettingsAppKey]
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    redis_client = request.app[RedisClientAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    if not user_info.email:
        raise AppError.validation("User email is required")

    now = utc_now()
    async with database_session_maker() as database_session:
        async with database_session.begin():
            completed = await complete_google_login(
                database_session,
                settings,
                user_info,
                tokens,
                now,
                user_agent=user_agent(request),
                ip_address=client_ip(request),
            )

    await schedule_token_refresh(
        redis_client, settings, completed.linked_account.id, now, tokens.expires_in
    )
    metrics_client.increment("auth.oauth.complete", 1)

    response = web.json_response(
        {
            "success": True,
            "session_id": completed.identity.cookie_value,
            "user_email": completed.user.email,
            "expires_at": completed.session.expires_at.isoformat(),
            "redirect_after": oauth_state.redirect_after,
        }
    )
    set_session_cookie(response, settings, completed.identity)
    return response


async def _require_state(request: web.Request, state: str) -> OAuthState:
    oauth_state = await consume_state(request.app[RedisClientAppKey], state)
    if oauth_state is None:
        raise AppError.oauth("Invalid or expired OAuth state")
    return oauth_state


async def handle_oauth_token(request: web.Request):
    http_session = request.app[SessionAppKey]

    body = await parse_json_body(request, OAuthTokenRequest)
    oauth_state = await _require_state(request, body.state)
    user_info = await verify_user_info(http_session, body.access_token, body.user_info)

    tokens = GoogleTokens(
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_in=body.expires_in or 3600,
    )
    return await _complete_login(request, oauth_state, tokens, user_info)


async def handle_oauth_exchange(request: web.Request):
    settings = request.app[SettingsAppKey]
    http_session = request.app[SessionAppKey]

    body = await parse_json_body(request, OAuthExchangeRequest)
    oauth_state = await _require_state(request, body.state)

    tokens = await exchange_code(http_session, settings, body.code, oauth_state.verifier)
    user_info = await fetch_user_info(http_session, tokens.access_token)
    return await _complete_login(request, oauth_state, tokens, user_info)


async def handle_session_user(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    identity = session_identity(request)

    async with database_session_maker() as database_session:
        async with database_session.begin():
            user, _ = await validate_session(database_session, identity, utc_now())

    return api_response(
        {
            "id": user.id,
            "email": user.email,
            "name": user.display_name,
            "picture": user.avatar_url,
        },
        message="Session valid",
    )


async def handle_logout(request: web.Request):
    settings = request.app[SettingsAppKey]
    database_session_maker = request.app[DatabaseSessionMakerAppKey]

    try:
        identity = session_identity(request)
    except AppError:
        identity = None

    if identity is not None:
        async with database_session_maker() as database_session:
            async with database_session.begin():
                revoked = await revoke_session(
                    database_session, identity, utc_now(), client_ip(request)
                )
        if not revoked:
            logger.debug("Logout for unknown session of user %s", identity.user_id)

    response = web.json_response({"success": True, "message": "Logged out"})
    clear_session_cookie(response, settings)
    return response


async def handle_list_sessions(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    identity = session_identity(request)
    now = utc_now()

    async with database_session_maker() as database_session:
        async with database_session.begin():
            user, current = await validate_session(database_session, identity, now)
            user_sessions = await list_sessions(database_session, user.id, now)

    return api_response(
        {
            "sessions": [
                {
                    "session_id": user_session.session_id,
                    "created_at": user_session.created_at.isoformat(),
                    "expires_at": user_session.expires_at.isoformat(),
                    "last_activity_at": user_session.last_activity_at.isoformat(),
                    "user_agent": user_session.user_agent,
                    "ip_address": user_session.ip_address,
                    "current": user_session.session_id == current.session_id,
                }
                for user_session in user_sessions
            ]
        }
    )
