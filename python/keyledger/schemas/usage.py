"""Usage record and aggregation Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class UsageRecordOut(BaseModel):
    """Response schema for one usage log entry."""

    id: UUID
    owner_id: UUID
    credential_id: UUID
    session_id: UUID | None = None
    message_id: UUID | None = None
    tokens_used: int
    cost: float
    request_type: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UsageFilters(BaseModel):
    """Exact-match filters for usage queries. Unset fields match everything."""

    credential_id: UUID | None = None
    session_id: UUID | None = None
    request_type: str | None = None


class ProviderUsage(BaseModel):
    """Usage totals for one provider bucket."""

    requests: int = 0
    tokens: int = 0
    cost: float = 0.0


class UsageSummary(BaseModel):
    """Aggregated usage for an owner.

    by_provider is keyed by provider name; records whose credential or
    provider no longer resolves are counted under "Unknown".
    """

    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    by_provider: dict[str, ProviderUsage] = Field(default_factory=dict)
