"""Provider, chat session and message Pydantic schemas."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# Valid message roles - must match DB constraint
MESSAGE_ROLES = Literal["user", "assistant", "system"]


# =============================================================================
# Provider catalog
# =============================================================================


class ProviderOut(BaseModel):
    """Response schema for a provider catalog entry."""

    id: UUID
    name: str
    logo_url: str | None = None
    is_active: bool
    available_models: list[Any] = Field(default_factory=list)
    default_settings: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Sessions and messages
# =============================================================================


class ChatSessionOut(BaseModel):
    """Response schema for a chat session."""

    id: UUID
    owner_id: UUID
    provider_id: UUID
    title: str
    model_id: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    last_message_at: datetime
    is_archived: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageOut(BaseModel):
    """Response schema for a message.

    Messages are immutable and ordered by sequence_number within a session.
    """

    id: UUID
    session_id: UUID
    role: str  # "user" | "assistant" | "system"
    content: str
    sequence_number: int
    parent_message_id: UUID | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SendMessageResponse(BaseModel):
    """Result of one send-message flow."""

    session: ChatSessionOut
    user_message: MessageOut
    assistant_message: MessageOut
    tokens_used: int
    cost: float
    # None when usage metering failed; the exchange itself still succeeded
    usage_record_id: UUID | None = None
