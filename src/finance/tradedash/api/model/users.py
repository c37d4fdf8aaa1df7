"""User accounts and the external identities linked to them."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from finance.tradedash.api.model.base import Base, guidpk, str100, str255, str512


class User(Base):
    """A dashboard user.

    Users created through OAuth have no username or password; `email` is the primary identity and is
    what OAuth logins match on.
    """

    __tablename__ = "users"

    id: Mapped[guidpk]
    username: Mapped[Optional[str]] = mapped_column(
        String(50), unique=True, nullable=True
    )
    email: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    display_name: Mapped[Optional[str255]]
    first_name: Mapped[Optional[str100]]
    last_name: Mapped[Optional[str100]]
    avatar_url: Mapped[Optional[str512]]
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime]
    updated_at: Mapped[datetime]
    last_login_at: Mapped[Optional[datetime]]

    def public_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "email": self.email}


class LinkedAccount(Base):
    """An identity at an external provider that signs a user in."""

    __tablename__ = "linked_accounts"
    __table_args__ = (
        UniqueConstraint(
            "provider_id", "provider_user_id", name="uq_linked_accounts_provider_user"
        ),
    )

    id: Mapped[guidpk]
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    provider_id: Mapped[int] = mapped_column(
        SmallInteger, ForeignKey("providers.id"), nullable=False
    )
    provider_user_id: Mapped[str255]
    provider_email: Mapped[Optional[str100]]
    provider_display_name: Mapped[Optional[str255]]
    provider_avatar_url: Mapped[Optional[str512]]
    provider_profile_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    connected_at: Mapped[datetime]
    last_login_at: Mapped[Optional[datetime]]
    updated_at: Mapped[datetime]
