import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Optional, Type, TypeVar

from aiohttp import web
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from finance.tradedash.api.app.config import SettingsAppKey
from finance.tradedash.api.app.errors import AppError
from finance.tradedash.api.auth.jwt import TokenClaims, verify_token
from finance.tradedash.api.auth.sessions import (
    SESSION_COOKIE,
    SessionIdentity,
    parse_session_cookie,
)
from finance.tradedash.api.model.users import User

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Width of the ip_address columns
MAX_IP_LENGTH = 50


def validation_details(error: ValidationError):
    return [
        {"field": ".".join(str(part) for part in e["loc"]), "message": e["msg"]}
        for e in error.errors()
    ]


async def parse_json_body(request: web.Request, model: Type[ModelT]) -> ModelT:
    """
    Read the request body as JSON and validate it against `model`.

    Raises:
        AppError: `validation` when the body is not JSON or does not match the model.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise AppError.validation("Invalid JSON body")

    if not isinstance(payload, dict):
        raise AppError.validation("Request body must be a JSON object")

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise AppError.validation("Invalid request body", validation_details(e))


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        address = str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None
    return address if len(address) <= MAX_IP_LENGTH else None


def client_ip(request: web.Request) -> Optional[str]:
    """
    The address of the client that sent the request.

    X-Forwarded-For and X-Real-IP are only read when `trusted_proxy_count` is set. With N trusted proxies the
    client is the Nth entry from the right of X-Forwarded-For, since the proxies append to the header and
    anything further left came from the client. Values that are not IP addresses are ignored.
    """
    trusted_proxy_count = request.app[SettingsAppKey].trusted_proxy_count
    if trusted_proxy_count > 0:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",")]
            index = -trusted_proxy_count if len(hops) >= trusted_proxy_count else 0
            forwarded_ip = _valid_ip(hops[index])
            if forwarded_ip:
                return forwarded_ip
        real_ip = _valid_ip(request.headers.get("X-Real-IP"))
        if real_ip:
            return real_ip
    return _valid_ip(request.remote)


def user_agent(request: web.Request) -> Optional[str]:
    return request.headers.get("User-Agent")


def bearer_token(request: web.Request) -> str:
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        raise AppError.missing_token()
    return authorization[7:].strip()


@dataclass(repr=False, eq=False)
class AuthToken:
    """
    A verified bearer token and the user it belongs to.

    Attributes:
        claims: The validated JWT claims
        user: The user named by the `sub` claim
    """

    claims: TokenClaims
    user: User


async def auth_token_helper(
    database_session: AsyncSession, request: web.Request
) -> AuthToken:
    """
    Authenticate a request carrying `Authorization: Bearer <jwt>`.

    Raises:
        AppError: `missing_token` without a bearer token, `invalid_token` when the token does not verify or its
            user no longer exists.
    """
    settings = request.app[SettingsAppKey]
    claims = verify_token(settings.jwt_secret, bearer_token(request))

    user: Optional[User] = await database_session.get(User, claims.subject)
    if user is None:
        raise AppError.invalid_token("Token user no longer exists")

    return AuthToken(claims=claims, user=user)


def session_identity(request: web.Request) -> SessionIdentity:
    return parse_session_cookie(request.cookies.get(SESSION_COOKIE))
