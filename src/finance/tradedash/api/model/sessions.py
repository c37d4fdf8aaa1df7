from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from finance.tradedash.api.model.base import Base, str50, str512


class UserSession(Base):
    """Browser session, one per user. The cookie identifies it through its token."""

    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    token_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tokens.id", ondelete="CASCADE"), unique=True
    )
    user_agent: Mapped[Optional[str512]]
    ip_address: Mapped[Optional[str50]]
    expires_at: Mapped[datetime] = mapped_column(index=True)
    created_at: Mapped[datetime]
    last_activity_at: Mapped[datetime]
