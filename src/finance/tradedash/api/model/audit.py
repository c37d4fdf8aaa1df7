from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, String
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from finance.tradedash.api.model.base import Base, guidpk, str50


class AuditEvent(str, Enum):
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_CHANGE_FAILED = "password_change_failed"
    PROFILE_UPDATE = "profile_update"
    ACCOUNT_CREATE = "account_create"
    ACCOUNT_DELETE = "account_delete"
    TOKEN_CREATE = "token_create"
    TOKEN_REVOKE = "token_revoke"
    PERMISSION_CHANGE = "permission_change"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    SECURITY_EVENT = "security_event"


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[guidpk]
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    event: Mapped[str50]
    ip_address: Mapped[Optional[str50]]
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime]


def record_audit_event(
    database_session: AsyncSession,
    event: AuditEvent,
    now: datetime,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
) -> AuditLog:
    """Add an audit row to the current transaction. The caller commits."""
    entry = AuditLog(
        id=str(ULID()),
        user_id=user_id,
        event=event.value,
        ip_address=ip_address,
        success=success,
        created_at=now,
    )
    database_session.add(entry)
    return entry
