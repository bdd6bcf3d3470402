"""Credential Pydantic schemas.

SECURITY: the outward model carries only display-safe fields. The
ciphertext never leaves the service layer and request models hold the
plaintext key as a SecretStr so it does not show up in reprs or dumps.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class CredentialOut(BaseModel):
    """Response schema for a stored credential.

    Excluded fields (never present in response):
    - ciphertext
    """

    id: UUID
    owner_id: UUID
    provider_id: UUID
    display_name: str
    key_fingerprint: str
    is_active: bool
    usage_stats: dict[str, Any] = Field(default_factory=dict)
    last_used_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CredentialCreate(BaseModel):
    """Request schema for registering a new provider key."""

    provider_id: UUID
    api_key: SecretStr = Field(..., description="The plaintext API key to store")
    display_name: str | None = Field(default=None, max_length=200)

    @field_validator("display_name")
    @classmethod
    def strip_display_name(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class CredentialPatch(BaseModel):
    """Partial update for a credential.

    A new api_key is format-checked and re-encrypted by the service; it is
    never written anywhere in plaintext.
    """

    display_name: str | None = Field(default=None, max_length=200)
    is_active: bool | None = None
    api_key: SecretStr | None = None

    model_config = ConfigDict(extra="forbid")
