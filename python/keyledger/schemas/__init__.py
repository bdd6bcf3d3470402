"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from keyledger.schemas.chat import (
    ChatSessionOut,
    MessageOut,
    ProviderOut,
    SendMessageResponse,
)
from keyledger.schemas.credentials import CredentialCreate, CredentialOut, CredentialPatch
from keyledger.schemas.subscription import (
    SubscriptionCreate,
    SubscriptionOut,
    SubscriptionPatch,
    TierLimits,
)
from keyledger.schemas.usage import ProviderUsage, UsageFilters, UsageRecordOut, UsageSummary

__all__ = [
    # Chat
    "ProviderOut",
    "ChatSessionOut",
    "MessageOut",
    "SendMessageResponse",
    # Credentials
    "CredentialOut",
    "CredentialCreate",
    "CredentialPatch",
    # Usage
    "UsageRecordOut",
    "UsageFilters",
    "ProviderUsage",
    "UsageSummary",
    # Subscriptions
    "SubscriptionOut",
    "SubscriptionCreate",
    "SubscriptionPatch",
    "TierLimits",
]
