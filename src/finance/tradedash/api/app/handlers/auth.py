"""
Username and password authentication handlers.

- POST /api/auth/register - Create a local account and return a bearer token
- POST /api/auth/login - Exchange a username (or email) and password for a bearer token
- GET /api/auth/me - Return the user behind a bearer token

Register and login answer with an `AuthResponse` body in both the success and failure cases, so the login form
can show `message` directly.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from aiohttp import web
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from finance.tradedash.api.app.config import DatabaseSessionMakerAppKey, SettingsAppKey
from finance.tradedash.api.app.errors import AppError, utc_now
from finance.tradedash.api.app.handlers.helpers import (
    auth_token_helper,
    client_ip,
    parse_json_body,
)
from finance.tradedash.api.auth.jwt import issue_token
from finance.tradedash.api.auth.users import authenticate_user, register_user
from finance.tradedash.api.model.users import User

logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    username: str = ""
    email: str = ""
    password: str = ""


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class AuthResponse(BaseModel):
    success: bool
    message: str
    user: Optional[Dict[str, Any]] = None
    token: Optional[str] = None


def auth_response(response: AuthResponse, status: int) -> web.Response:
    return web.json_response(response.model_dump(mode="json"), status=status)


def auth_failure(message: str, status: int) -> web.Response:
    return auth_response(AuthResponse(success=False, message=message), status)


def _issue_user_token(request: web.Request, user: User) -> str:
    settings = request.app[SettingsAppKey]
    return issue_token(
        settings.jwt_secret,
        user.id,
        user.username,
        now=utc_now(),
        lifetime=timedelta(seconds=settings.jwt_expiry),
    )


async def handle_register(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]

    try:
        body = await parse_json_body(request, RegisterRequest)
        async with database_session_maker() as database_session:
            async with database_session.begin():
                user = await register_user(
                    database_session,
                    body.username,
                    body.email,
                    body.password,
                    utc_now(),
                    ip_address=client_ip(request),
                )
    except AppError as e:
        if e.status != 400:
            raise
        return auth_failure(e.message, 400)
    except IntegrityError:
        return auth_failure("Username or email already exists", 400)

    return auth_response(
        AuthResponse(
            success=True,
            message="User registered successfully",
            user=user.public_dict(),
            token=_issue_user_token(request, user),
        ),
        201,
    )


async def handle_login(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]

    try:
        body = await parse_json_body(request, LoginRequest)
    except AppError as e:
        return auth_failure(e.message, 400)

    if not body.username.strip() or not body.password:
        return auth_failure("Username and password are required", 400)

    async with database_session_maker() as database_session:
        async with database_session.begin():
            user = await authenticate_user(
                database_session,
                body.username,
                body.password,
                utc_now(),
                ip_address=client_ip(request),
            )

    if user is None:
        return auth_failure("Invalid credentials", 401)

    return auth_response(
        AuthResponse(
            success=True,
            message="Login successful",
            user=user.public_dict(),
            token=_issue_user_token(request, user),
        ),
        200,
    )


async def handle_me(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    async with database_session_maker() as database_session:
        auth_token = await auth_token_helper(database_session, request)
    return web.json_response({"success": True, "user": auth_token.user.public_dict()})
