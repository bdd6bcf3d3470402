"""keyledger schema - providers, credentials, chat sessions, messages, usage, subscriptions

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Ids and timestamps are supplied by the application, so the schema runs
unchanged on PostgreSQL and SQLite.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # providers table (reference data)
    # ==========================================================================
    op.create_table(
        "providers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("available_models", JSON_TYPE, nullable=False),
        sa.Column("default_settings", JSON_TYPE, nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_providers_name"),
    )

    # ==========================================================================
    # credentials table
    # ==========================================================================
    op.create_table(
        "credentials",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=False),
        sa.Column("ciphertext", sa.Text(), nullable=False),
        sa.Column("key_fingerprint", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("usage_stats", JSON_TYPE, nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"]),
    )
    op.create_index("ix_credentials_owner_id", "credentials", ["owner_id"])
    op.create_index("ix_credentials_owner_provider", "credentials", ["owner_id", "provider_id"])

    # ==========================================================================
    # chat_sessions table
    # ==========================================================================
    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("model_id", sa.Text(), nullable=True),
        sa.Column("settings", JSON_TYPE, nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"]),
    )
    op.create_index("ix_chat_sessions_owner_id", "chat_sessions", ["owner_id"])
    op.create_index(
        "ix_chat_sessions_owner_recency", "chat_sessions", ["owner_id", "last_message_at"]
    )

    # ==========================================================================
    # messages table
    # ==========================================================================
    # No ON DELETE CASCADE: messages must be removed before their session.
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("parent_message_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["session_id"], ["chat_sessions.id"]),
        sa.UniqueConstraint("session_id", "sequence_number", name="uq_messages_session_seq"),
        sa.CheckConstraint("sequence_number >= 1", name="ck_messages_sequence_positive"),
        sa.CheckConstraint("role IN ('user', 'assistant', 'system')", name="ck_messages_role"),
    )

    # ==========================================================================
    # usage_records table (append-only, no foreign keys)
    # ==========================================================================
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("credential_id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=True),
        sa.Column("message_id", sa.Uuid(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=False),
        sa.Column("cost", sa.Float(), nullable=False),
        sa.Column("request_type", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("tokens_used >= 0", name="ck_usage_records_tokens_non_negative"),
        sa.CheckConstraint("cost >= 0", name="ck_usage_records_cost_non_negative"),
    )
    op.create_index("ix_usage_records_owner_id", "usage_records", ["owner_id"])

    # ==========================================================================
    # subscriptions table
    # ==========================================================================
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("tier", sa.Text(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("payment_status", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("tier IN ('free', 'plus', 'premium')", name="ck_subscriptions_tier"),
    )

    # Partial unique index: at most one active subscription per owner
    op.create_index(
        "uq_subscriptions_one_active_per_owner",
        "subscriptions",
        ["owner_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_index("uq_subscriptions_one_active_per_owner", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_usage_records_owner_id", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_table("messages")
    op.drop_index("ix_chat_sessions_owner_recency", table_name="chat_sessions")
    op.drop_index("ix_chat_sessions_owner_id", table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_index("ix_credentials_owner_provider", table_name="credentials")
    op.drop_index("ix_credentials_owner_id", table_name="credentials")
    op.drop_table("credentials")
    op.drop_table("providers")
