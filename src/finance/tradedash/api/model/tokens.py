"""
Stored tokens and token lifetimes.

Rows in `tokens` back both first-party sessions and provider credentials:

* `TokenType.SESSION` rows are referenced by a session cookie (`<user_id>:<token_id>`).
* `TokenType.OAUTH_ACCESS` / `TokenType.OAUTH_REFRESH` rows hold Fernet-encrypted provider tokens for a
  linked account.

`TOKEN_KINDS` is the catalogue of named token kinds with their default lifetimes, expressed in the compact
expiration format understood by `parse_expiration`.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Dict, Optional

from sqlalchemy import ForeignKey, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from finance.tradedash.api.model.base import Base, guidpk


class TokenType(IntEnum):
    SESSION = 1
    OAUTH_ACCESS = 2
    OAUTH_REFRESH = 3


class Token(Base):
    __tablename__ = "tokens"

    id: Mapped[guidpk]
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    linked_account_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("linked_accounts.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    token_type: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    token_value: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(index=True)
    created_at: Mapped[datetime]
    last_used_at: Mapped[Optional[datetime]]


_EXPIRATION_PATTERN = re.compile(r"^(\d+)([mhdwM])$")

_EXPIRATION_UNITS: Dict[str, timedelta] = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "M": timedelta(days=30),
}


def parse_expiration(value: str) -> Optional[timedelta]:
    """
    Parse a compact token lifetime.

    Accepts "never" (returns None) or a positive count followed by a unit: `m` minutes, `h` hours, `d` days,
    `w` weeks or `M` months of 30 days. Units are case sensitive because `m` and `M` differ.

    Raises:
        ValueError: If the value is not in a recognized format.
    """
    value = value.strip()
    if value.lower() == "never":
        return None

    match = _EXPIRATION_PATTERN.match(value)
    if match is None:
        raise ValueError(f"Invalid expiration format: {value!r}")

    count, unit = match.groups()
    return _EXPIRATION_UNITS[unit] * int(count)


@dataclass(frozen=True)
class TokenKind:
    name: str
    description: str
    default_expiration: str

    @property
    def lifetime(self) -> Optional[timedelta]:
        return parse_expiration(self.default_expiration)

    def expires_at(self, now: datetime) -> Optional[datetime]:
        lifetime = self.lifetime
        if lifetime is None:
            return None
        return now + lifetime


TOKEN_KINDS: Dict[str, TokenKind] = {
    kind.name: kind
    for kind in (
        TokenKind("access", "Short-lived API access token", "1h"),
        TokenKind("refresh", "Token used to obtain new access tokens", "30d"),
        TokenKind("api_key", "Long-lived API key", "never"),
        TokenKind("session", "Browser session token", "24h"),
        TokenKind("reset", "Password reset token", "1h"),
        TokenKind("verification", "Email verification token", "24h"),
        TokenKind("invite", "Account invitation token", "7d"),
    )
}
