"""Tier gate: subscription tiers, limits and admission control.

Tier ranks: free(0) < plus(1) < premium(2). An owner without an active
subscription is on the free tier.

Invariant: at most one active subscription per owner. create_subscription
deactivates the previous active row and inserts the new one in a single
transaction, and a partial unique index on (owner_id) WHERE is_active
rejects a concurrent second insert.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from keyledger.db.models import ChatSession, Credential, Message, Subscription, SubscriptionTier
from keyledger.db.session import transaction
from keyledger.errors import ApiErrorCode, NotFoundError, TierLimitError, ValidationError
from keyledger.logging import get_logger
from keyledger.schemas.subscription import (
    SubscriptionCreate,
    SubscriptionOut,
    SubscriptionPatch,
    TierLimits,
)

logger = get_logger(__name__)

DEFAULT_TIER = SubscriptionTier.free.value

TIER_LIMITS: dict[str, TierLimits] = {
    "free": TierLimits(api_keys=1, chat_sessions=5, messages_per_session=50, saved_prompts=0),
    "plus": TierLimits(api_keys=3, chat_sessions=20, messages_per_session=200, saved_prompts=10),
    "premium": TierLimits(
        api_keys=10, chat_sessions=100, messages_per_session=1000, saved_prompts=50
    ),
}

TIER_RANK: dict[str, int] = {"free": 0, "plus": 1, "premium": 2}


class TierResource(str, Enum):
    """Resources whose count is limited by tier."""

    api_keys = "api_keys"
    chat_sessions = "chat_sessions"
    messages_per_session = "messages_per_session"


def limits_for(tier: str | None) -> TierLimits:
    """Limits for a tier. Unknown or missing tiers get the free limits."""
    return TIER_LIMITS.get(tier or DEFAULT_TIER, TIER_LIMITS[DEFAULT_TIER])


# =============================================================================
# Subscriptions
# =============================================================================


def get_current_subscription(db: Session, owner_id: UUID) -> Subscription | None:
    """The owner's active subscription, or None.

    If legacy data holds several active rows, the one ending last wins;
    an open-ended row counts as ending last.
    """
    stmt = (
        select(Subscription)
        .where(Subscription.owner_id == owner_id, Subscription.is_active.is_(True))
        .order_by(
            Subscription.end_date.is_(None).desc(),
            Subscription.end_date.desc(),
            Subscription.created_at.desc(),
        )
        .limit(1)
    )
    return db.scalars(stmt).first()


def get_current_tier(db: Session, owner_id: UUID) -> str:
    """Tier of the owner's active subscription, free if there is none."""
    subscription = get_current_subscription(db, owner_id)
    if subscription is None or subscription.tier not in TIER_RANK:
        return DEFAULT_TIER
    return subscription.tier


def has_access(db: Session, owner_id: UUID, required_tier: str) -> bool:
    """Whether the owner's tier ranks at or above required_tier.

    An unknown required tier is never granted.
    """
    required_rank = TIER_RANK.get(required_tier)
    if required_rank is None:
        return False
    return TIER_RANK[get_current_tier(db, owner_id)] >= required_rank


def create_subscription(db: Session, owner_id: UUID, data: SubscriptionCreate) -> SubscriptionOut:
    """Start a new subscription, retiring the owner's active one.

    Deactivation and insert commit together or not at all.
    """
    now = datetime.now(UTC)

    with transaction(db):
        result = db.execute(
            update(Subscription)
            .where(Subscription.owner_id == owner_id, Subscription.is_active.is_(True))
            .values(is_active=False, updated_at=now)
        )
        subscription = Subscription(
            owner_id=owner_id,
            tier=data.tier,
            start_date=data.start_date or now,
            end_date=data.end_date,
            is_active=True,
            payment_status=data.payment_status,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
        db.flush()

    logger.info(
        "subscription_created",
        subscription_id=str(subscription.id),
        tier=subscription.tier,
        deactivated=result.rowcount,
    )
    return SubscriptionOut.model_validate(subscription)


def _get_owned_subscription(db: Session, subscription_id: UUID, owner_id: UUID) -> Subscription:
    stmt = (
        select(Subscription)
        .where(Subscription.id == subscription_id, Subscription.owner_id == owner_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = db.scalars(stmt).first()
    if subscription is None:
        raise NotFoundError(ApiErrorCode.E_SUBSCRIPTION_NOT_FOUND, "Subscription not found")
    return subscription


def update_subscription(
    db: Session, subscription_id: UUID, owner_id: UUID, patch: SubscriptionPatch
) -> SubscriptionOut:
    """Change tier, end date or payment status of an owned subscription."""
    with transaction(db):
        subscription = _get_owned_subscription(db, subscription_id, owner_id)
        for field in patch.model_fields_set:
            value = getattr(patch, field)
            if field == "tier" and value is None:
                continue
            setattr(subscription, field, value)
        subscription.updated_at = datetime.now(UTC)
        db.flush()

    logger.info("subscription_updated", subscription_id=str(subscription_id))
    return SubscriptionOut.model_validate(subscription)


def cancel_subscription(db: Session, subscription_id: UUID, owner_id: UUID) -> SubscriptionOut:
    """Deactivate an owned subscription, ending it now."""
    now = datetime.now(UTC)
    with transaction(db):
        subscription = _get_owned_subscription(db, subscription_id, owner_id)
        subscription.is_active = False
        subscription.end_date = now
        subscription.updated_at = now
        db.flush()

    logger.info("subscription_cancelled", subscription_id=str(subscription_id))
    return SubscriptionOut.model_validate(subscription)


# =============================================================================
# Admission control
# =============================================================================


def _current_count(
    db: Session, owner_id: UUID, resource: TierResource, session_id: UUID | None
) -> int:
    if resource is TierResource.api_keys:
        stmt = select(func.count(Credential.id)).where(
            Credential.owner_id == owner_id, Credential.is_active.is_(True)
        )
    elif resource is TierResource.chat_sessions:
        stmt = select(func.count(ChatSession.id)).where(ChatSession.owner_id == owner_id)
    else:
        if session_id is None:
            raise ValidationError(
                ApiErrorCode.E_INVALID_REQUEST, "session_id is required for messages_per_session"
            )
        stmt = select(func.count(Message.id)).where(Message.session_id == session_id)
    return db.scalar(stmt) or 0


def _evaluate(
    db: Session,
    owner_id: UUID,
    resource: TierResource,
    session_id: UUID | None,
    additional: int,
) -> tuple[bool, str, int, int]:
    tier = get_current_tier(db, owner_id)
    limit = getattr(limits_for(tier), resource.value)
    current = _current_count(db, owner_id, resource, session_id)
    return current + additional <= limit, tier, current, limit


def check_admission(
    db: Session,
    owner_id: UUID,
    resource: TierResource,
    session_id: UUID | None = None,
    additional: int = 1,
) -> bool:
    """Whether the owner may add `additional` more of a resource.

    Counts active credentials for api_keys, all of the owner's sessions
    (archived included) for chat_sessions, and the messages of session_id
    for messages_per_session.
    """
    admitted, _, _, _ = _evaluate(db, owner_id, resource, session_id, additional)
    return admitted


def require_admission(
    db: Session,
    owner_id: UUID,
    resource: TierResource,
    session_id: UUID | None = None,
    additional: int = 1,
) -> None:
    """Raise TierLimitError unless check_admission would pass."""
    admitted, tier, current, limit = _evaluate(db, owner_id, resource, session_id, additional)
    if not admitted:
        logger.info(
            "tier_limit_reached",
            resource=resource.value,
            tier=tier,
            current=current,
            limit=limit,
        )
        raise TierLimitError(f"The {tier} tier allows {limit} {resource.value.replace('_', ' ')}")
