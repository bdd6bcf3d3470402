"""Database module for keyledger.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from keyledger.db.engine import create_db_engine, get_engine
from keyledger.db.models import (
    Base,
    ChatSession,
    Credential,
    Message,
    MessageRole,
    Provider,
    Subscription,
    SubscriptionTier,
    UsageRecord,
)
from keyledger.db.session import create_session_factory, get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "create_session_factory",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Enums
    "MessageRole",
    "SubscriptionTier",
    # Models
    "Provider",
    "Credential",
    "ChatSession",
    "Message",
    "UsageRecord",
    "Subscription",
]
