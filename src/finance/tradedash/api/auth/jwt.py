"""
Bearer tokens for username/password logins.

Tokens are HS256 JWTs signed with the shared `jwt_secret`:

    {"sub": <user id>, "username": <username>, "iat": <issued>, "exp": <issued + jwt_expiry>}
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException, base64url_encode

from finance.tradedash.api.app.errors import AppError


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    username: Optional[str]
    issued_at: datetime
    expires_at: datetime


def signing_key(secret: str) -> jwk.JWK:
    """Derive a 256-bit HMAC key from the configured secret so short secrets still make a valid HS256 key."""
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return jwk.JWK(kty="oct", k=base64url_encode(digest))


def issue_token(
    secret: str,
    user_id: str,
    username: Optional[str],
    now: Optional[datetime] = None,
    lifetime: timedelta = timedelta(hours=24),
) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    token = jwt.JWT(
        header={"alg": "HS256", "typ": "JWT"},
        claims={
            "sub": user_id,
            "username": username,
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
        },
    )
    token.make_signed_token(signing_key(secret))
    return token.serialize()


def verify_token(secret: str, serialized_token: str) -> TokenClaims:
    """
    Validate a bearer token's signature and expiry.

    Raises:
        AppError: `invalid_token` for a bad signature, an unexpected algorithm, a malformed token, a missing
            subject or an expired token.
    """
    try:
        validated = jwt.JWT(
            jwt=serialized_token,
            key=signing_key(secret),
            algs=["HS256"],
            check_claims={"exp": None},
        )
    except jwt.JWTExpired:
        raise AppError.invalid_token("Token expired")
    except (JWException, ValueError):
        raise AppError.invalid_token()

    claims = json.loads(validated.claims)
    subject = claims.get("sub")
    if not subject:
        raise AppError.invalid_token("Token missing subject")

    return TokenClaims(
        subject=subject,
        username=claims.get("username"),
        issued_at=datetime.fromtimestamp(int(claims.get("iat", 0)), timezone.utc),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), timezone.utc),
    )
