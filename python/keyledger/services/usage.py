"""Usage meter service layer.

Every completed provider call appends one usage record. Recording is
best-effort: a failure is rolled back, logged as usage_record_failed and
reported to the caller as None, so a metering outage never breaks a chat
that already succeeded.

Usage records carry no foreign keys. Aggregation resolves each record's
provider through its credential; records whose credential (or provider)
is gone are counted under "Unknown" rather than dropped.
"""

from uuid import UUID

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from keyledger.db.models import Credential, Provider, UsageRecord, utcnow
from keyledger.db.session import transaction
from keyledger.logging import get_logger
from keyledger.schemas.usage import ProviderUsage, UsageFilters, UsageRecordOut, UsageSummary

logger = get_logger(__name__)

UNKNOWN_PROVIDER = "Unknown"
DEFAULT_REQUEST_TYPE = "chat"

DEFAULT_LOG_PAGE_SIZE = 20
MAX_LOG_PAGE_SIZE = 100


def record_usage(
    db: Session,
    owner_id: UUID,
    credential_id: UUID,
    tokens_used: int,
    cost: float,
    session_id: UUID | None = None,
    message_id: UUID | None = None,
    request_type: str = DEFAULT_REQUEST_TYPE,
) -> UsageRecordOut | None:
    """Append a usage record. Never raises.

    Returns:
        The stored record, or None if it could not be stored.
    """
    try:
        with transaction(db):
            record = UsageRecord(
                owner_id=owner_id,
                credential_id=credential_id,
                session_id=session_id,
                message_id=message_id,
                tokens_used=tokens_used,
                cost=cost,
                request_type=request_type or DEFAULT_REQUEST_TYPE,
                created_at=utcnow(),
            )
            db.add(record)
            db.flush()
    except Exception as e:
        logger.warning(
            "usage_record_failed",
            credential_id=str(credential_id),
            session_id=str(session_id) if session_id else None,
            tokens_used=tokens_used,
            error_type=type(e).__name__,
        )
        return None

    logger.debug(
        "usage_recorded",
        usage_record_id=str(record.id),
        tokens_used=tokens_used,
        cost=cost,
    )
    return UsageRecordOut.model_validate(record)


def _apply_filters(stmt: Select, filters: UsageFilters | None) -> Select:
    if filters is None:
        return stmt
    if filters.credential_id is not None:
        stmt = stmt.where(UsageRecord.credential_id == filters.credential_id)
    if filters.session_id is not None:
        stmt = stmt.where(UsageRecord.session_id == filters.session_id)
    if filters.request_type is not None:
        stmt = stmt.where(UsageRecord.request_type == filters.request_type)
    return stmt


def aggregate_usage(
    db: Session, owner_id: UUID, filters: UsageFilters | None = None
) -> UsageSummary:
    """Total an owner's usage, overall and per provider name."""
    stmt = (
        select(UsageRecord.tokens_used, UsageRecord.cost, Provider.name)
        .outerjoin(Credential, Credential.id == UsageRecord.credential_id)
        .outerjoin(Provider, Provider.id == Credential.provider_id)
        .where(UsageRecord.owner_id == owner_id)
    )
    stmt = _apply_filters(stmt, filters)

    summary = UsageSummary()
    for tokens_used, cost, provider_name in db.execute(stmt).all():
        bucket = summary.by_provider.setdefault(
            provider_name or UNKNOWN_PROVIDER, ProviderUsage()
        )
        bucket.requests += 1
        bucket.tokens += tokens_used
        bucket.cost += cost

        summary.total_requests += 1
        summary.total_tokens += tokens_used
        summary.total_cost += cost

    return summary


def list_usage_log(
    db: Session,
    owner_id: UUID,
    page: int = 0,
    limit: int = DEFAULT_LOG_PAGE_SIZE,
    filters: UsageFilters | None = None,
) -> list[UsageRecordOut]:
    """One page of an owner's usage records, newest first.

    Page p covers rows [p * limit, p * limit + limit).
    """
    limit = min(max(limit, 1), MAX_LOG_PAGE_SIZE)
    page = max(page, 0)

    stmt = select(UsageRecord).where(UsageRecord.owner_id == owner_id)
    stmt = _apply_filters(stmt, filters)
    stmt = (
        stmt.order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
        .limit(limit)
        .offset(page * limit)
    )
    return [UsageRecordOut.model_validate(r) for r in db.scalars(stmt).all()]
