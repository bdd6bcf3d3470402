"""SQLAlchemy ORM models for keyledger.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Column types are portable so the same models run on PostgreSQL (production)
and SQLite (local and tests). Enums are Python enums stored as text with
CHECK constraints.

Owner ids come from the external authentication provider; there is no
users table here.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class MessageRole(str, PyEnum):
    """Author of a chat message."""

    user = "user"
    assistant = "assistant"
    system = "system"


class SubscriptionTier(str, PyEnum):
    """Subscription levels, in ascending order of entitlement."""

    free = "free"
    plus = "plus"
    premium = "premium"


# =============================================================================
# Models
# =============================================================================


class Provider(Base):
    """AI provider reference data (read-mostly, not owned by any user)."""

    __tablename__ = "providers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    logo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Ordered list of model descriptors, e.g. [{"id": "gpt-4o", "name": "GPT-4o"}]
    available_models: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    default_settings: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (UniqueConstraint("name", name="uq_providers_name"),)


class Credential(Base):
    """A user's encrypted API key for one provider.

    Only the ciphertext is stored; key_fingerprint (last 4 chars) is kept
    for display and log correlation.
    """

    __tablename__ = "credentials"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False
    )
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    key_fingerprint: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # metric name -> accumulated value (total_tokens, total_cost, usage_YYYY-MM-DD)
    usage_stats: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_credentials_owner_provider", "owner_id", "provider_id"),)

    # Relationships
    provider: Mapped["Provider"] = relationship("Provider")


class ChatSession(Base):
    """A conversation held through one provider, owned by one user."""

    __tablename__ = "chat_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("providers.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    model_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    settings: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_chat_sessions_owner_recency", "owner_id", "last_message_at"),
    )

    # Relationships
    provider: Mapped["Provider"] = relationship("Provider")


class Message(Base):
    """An immutable chat message.

    sequence_number is gap-free from 1 within a session. session_id has no
    ON DELETE CASCADE: a session row can only be removed once its messages
    are gone. parent_message_id is a plain back-reference to the previous
    message, not a foreign key.
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("chat_sessions.id"), nullable=False
    )
    role: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_message_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("session_id", "sequence_number", name="uq_messages_session_seq"),
        CheckConstraint("sequence_number >= 1", name="ck_messages_sequence_positive"),
        CheckConstraint(
            "role IN ('user', 'assistant', 'system')",
            name="ck_messages_role",
        ),
    )


class UsageRecord(Base):
    """Append-only log entry for one completed provider call.

    No foreign keys: rows outlive deleted credentials and sessions for audit.
    """

    __tablename__ = "usage_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    credential_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    message_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    request_type: Mapped[str] = mapped_column(Text, nullable=False, default="chat")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_usage_records_tokens_non_negative"),
        CheckConstraint("cost >= 0", name="ck_usage_records_cost_non_negative"),
    )


class Subscription(Base):
    """A user's subscription tier.

    At most one active row per owner, enforced by a partial unique index.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    tier: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "tier IN ('free', 'plus', 'premium')",
            name="ck_subscriptions_tier",
        ),
        Index(
            "uq_subscriptions_one_active_per_owner",
            "owner_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )
