"""Subscription and tier Pydantic schemas."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

# Valid tiers - must match DB constraint
TierName = Literal["free", "plus", "premium"]


class SubscriptionOut(BaseModel):
    """Response schema for a subscription."""

    id: UUID
    owner_id: UUID
    tier: str
    start_date: datetime
    end_date: datetime | None = None
    is_active: bool
    payment_status: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionCreate(BaseModel):
    """Request schema for starting a subscription."""

    tier: TierName
    start_date: datetime | None = None
    end_date: datetime | None = None
    payment_status: str | None = None


class SubscriptionPatch(BaseModel):
    """Partial update for a subscription."""

    tier: TierName | None = None
    end_date: datetime | None = None
    payment_status: str | None = None

    model_config = ConfigDict(extra="forbid")


class TierLimits(BaseModel):
    """Numeric resource limits granted by a tier."""

    api_keys: int
    chat_sessions: int
    messages_per_session: int
    saved_prompts: int

    model_config = ConfigDict(frozen=True)
