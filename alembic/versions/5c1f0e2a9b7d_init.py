"""init

Revision ID: 5c1f0e2a9b7d
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""

from datetime import datetime, timezone
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1f0e2a9b7d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PROVIDERS = [
    (1, "local", "Local Account", False),
    (2, "google", "Google", True),
    (3, "github", "GitHub", True),
    (4, "microsoft", "Microsoft", True),
    (5, "apple", "Apple", True),
    (6, "facebook", "Facebook", True),
    (7, "twitter", "Twitter", True),
    (8, "discord", "Discord", True),
]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("username", sa.String(50), nullable=True),
        sa.Column("email", sa.String(100), nullable=False),
        sa.Column("password_hash", sa.Text, nullable=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("avatar_url", sa.String(512), nullable=True),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_users_username", "users", ["username"], unique=True)
    op.create_index("idx_users_email", "users", ["email"], unique=True)

    providers = op.create_table(
        "providers",
        sa.Column("id", sa.SmallInteger, primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("is_oauth", sa.Boolean, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_providers_name", "providers", ["name"], unique=True)

    op.create_table(
        "linked_accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "provider_id",
            sa.SmallInteger,
            sa.ForeignKey("providers.id"),
            nullable=False,
        ),
        sa.Column("provider_user_id", sa.String(255), nullable=False),
        sa.Column("provider_email", sa.String(100), nullable=True),
        sa.Column("provider_display_name", sa.String(255), nullable=True),
        sa.Column("provider_avatar_url", sa.String(512), nullable=True),
        sa.Column("provider_profile_data", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "provider_id", "provider_user_id", name="uq_linked_accounts_provider_user"
        ),
    )
    op.create_index("idx_linked_accounts_user", "linked_accounts", ["user_id"])

    op.create_table(
        "tokens",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "linked_account_id",
            sa.String(64),
            sa.ForeignKey("linked_accounts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("token_type", sa.SmallInteger, nullable=False),
        sa.Column("token_value", sa.Text, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_tokens_user", "tokens", ["user_id"])
    op.create_index("idx_tokens_linked_account", "tokens", ["linked_account_id"])
    op.create_index("idx_tokens_expires", "tokens", ["expires_at"])

    op.create_table(
        "sessions",
        sa.Column("session_id", sa.String(64), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "token_id",
            sa.String(64),
            sa.ForeignKey("tokens.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip_address", sa.String(50), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_sessions_user", "sessions", ["user_id"])
    op.create_index("idx_sessions_token", "sessions", ["token_id"], unique=True)
    op.create_index("idx_sessions_expires", "sessions", ["expires_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("event", sa.String(50), nullable=False),
        sa.Column("ip_address", sa.String(50), nullable=True),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_audit_log_user", "audit_log", ["user_id"])
    op.create_index("idx_audit_log_created", "audit_log", ["created_at"])

    now = datetime.now(timezone.utc)
    op.bulk_insert(
        providers,
        [
            {
                "id": provider_id,
                "name": name,
                "display_name": display_name,
                "is_oauth": is_oauth,
                "is_active": True,
                "created_at": now,
            }
            for provider_id, name, display_name, is_oauth in PROVIDERS
        ],
    )


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("sessions")
    op.drop_table("tokens")
    op.drop_table("linked_accounts")
    op.drop_table("providers")
    op.drop_table("users")
