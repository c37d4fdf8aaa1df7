"""Authentication provider catalogue.

Providers are fixed rows seeded by the initial migration and topped up at startup. The integer ids are stable
and referenced from `linked_accounts.provider_id`, so `ProviderType` mirrors the seed data.
"""

from datetime import datetime
from enum import IntEnum
from typing import Dict, List

from sqlalchemy import Boolean, SmallInteger, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from finance.tradedash.api.model.base import Base, str100


class ProviderType(IntEnum):
    LOCAL = 1
    GOOGLE = 2
    GITHUB = 3
    MICROSOFT = 4
    APPLE = 5
    FACEBOOK = 6
    TWITTER = 7
    DISCORD = 8

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES[self]

    @property
    def is_oauth(self) -> bool:
        return self is not ProviderType.LOCAL


PROVIDER_DISPLAY_NAMES: Dict[ProviderType, str] = {
    ProviderType.LOCAL: "Local Account",
    ProviderType.GOOGLE: "Google",
    ProviderType.GITHUB: "GitHub",
    ProviderType.MICROSOFT: "Microsoft",
    ProviderType.APPLE: "Apple",
    ProviderType.FACEBOOK: "Facebook",
    ProviderType.TWITTER: "Twitter",
    ProviderType.DISCORD: "Discord",
}


class Provider(Base):
    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    display_name: Mapped[str100]
    is_oauth: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime]


def default_provider_rows(now: datetime) -> List[Dict[str, object]]:
    return [
        {
            "id": int(provider),
            "name": provider.name.lower(),
            "display_name": provider.display_name,
            "is_oauth": provider.is_oauth,
            "is_active": True,
            "created_at": now,
        }
        for provider in ProviderType
    ]


async def ensure_providers(database_session: AsyncSession, now: datetime) -> int:
    """Insert any provider rows that are missing. Returns the number inserted."""
    existing = set(
        (await database_session.scalars(select(Provider.id))).all()
    )
    added = 0
    for row in default_provider_rows(now):
        if row["id"] in existing:
            continue
        database_session.add(Provider(**row))
        added += 1
    return added
