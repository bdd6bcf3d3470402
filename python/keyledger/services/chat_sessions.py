"""Chat session and message ledger service layer.

Session lifecycle: active <-> archived, then deleted (terminal). Deletion
removes the session's messages before the session row; the messages
foreign key has no cascade, so the store refuses the opposite order.

Message invariants:
- sequence_number is gap-free from 1 within a session (see services.seq)
- parent_message_id points at the previous message (None for the first)
- messages are never updated after insert
- every append moves the session's last_message_at forward, never back

Sessions not owned by the caller are reported as not found.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from keyledger.db.models import ChatSession, Message, MessageRole
from keyledger.db.session import transaction
from keyledger.errors import (
    ApiErrorCode,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from keyledger.logging import get_logger
from keyledger.schemas.chat import ChatSessionOut, MessageOut
from keyledger.services.credentials import get_active_credential
from keyledger.services.providers import default_model_id, get_provider_or_404
from keyledger.services.seq import lock_chat_session, next_message_position
from keyledger.services.tiers import TierResource, require_admission

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

VALID_ROLES = frozenset(role.value for role in MessageRole)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _clamp_page(limit: int, offset: int) -> tuple[int, int]:
    return min(max(limit, 1), MAX_PAGE_SIZE), max(offset, 0)


def _session_not_found() -> NotFoundError:
    return NotFoundError(ApiErrorCode.E_SESSION_NOT_FOUND, "Chat session not found")


def _get_owned_session(
    db: Session, session_id: UUID, owner_id: UUID, lock: bool = False
) -> ChatSession:
    if lock:
        chat_session = lock_chat_session(db, session_id)
    else:
        chat_session = db.get(ChatSession, session_id)
    if chat_session is None or chat_session.owner_id != owner_id:
        raise _session_not_found()
    return chat_session


# =============================================================================
# Sessions
# =============================================================================


def create_session(
    db: Session,
    owner_id: UUID,
    provider_id: UUID,
    title: str | None = None,
    model_id: str | None = None,
    settings: dict[str, Any] | None = None,
) -> ChatSessionOut:
    """Create a chat session with a provider.

    The model defaults to the provider's first listed model. Settings are
    the provider defaults shallow-merged with the caller's overrides
    (caller keys win).

    Raises:
        NotFoundError: E_PROVIDER_NOT_FOUND if the provider does not exist.
        PreconditionError: E_NO_ACTIVE_CREDENTIAL if the owner has no
            active credential for the provider.
    """
    now = datetime.now(UTC)

    with transaction(db):
        provider = get_provider_or_404(db, provider_id)
        if get_active_credential(db, owner_id, provider_id) is None:
            raise PreconditionError(
                ApiErrorCode.E_NO_ACTIVE_CREDENTIAL,
                f"Add an active API key for {provider.name} before starting a chat",
            )

        merged_settings = {**(provider.default_settings or {}), **(settings or {})}
        if not title or not title.strip():
            title = f"Chat with {provider.name} - {now:%Y-%m-%d %H:%M:%S} UTC"

        chat_session = ChatSession(
            owner_id=owner_id,
            provider_id=provider_id,
            title=title.strip(),
            model_id=model_id or default_model_id(provider),
            settings=merged_settings,
            last_message_at=now,
            is_archived=False,
            created_at=now,
            updated_at=now,
        )
        db.add(chat_session)
        db.flush()

    logger.info(
        "chat_session_created",
        session_id=str(chat_session.id),
        provider_id=str(provider_id),
        model_id=chat_session.model_id,
    )
    return ChatSessionOut.model_validate(chat_session)


def open_session(
    db: Session,
    owner_id: UUID,
    provider_id: UUID,
    title: str | None = None,
    model_id: str | None = None,
    settings: dict[str, Any] | None = None,
) -> ChatSessionOut:
    """Create a session after checking the owner's tier admits one more.

    Raises:
        TierLimitError: If the owner is at the tier's session limit.
        Plus everything create_session raises.
    """
    require_admission(db, owner_id, TierResource.chat_sessions)
    return create_session(db, owner_id, provider_id, title, model_id, settings)


def get_session(db: Session, session_id: UUID, owner_id: UUID) -> ChatSessionOut:
    """Get an owned chat session."""
    return ChatSessionOut.model_validate(_get_owned_session(db, session_id, owner_id))


def list_sessions(
    db: Session,
    owner_id: UUID,
    include_archived: bool = False,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> list[ChatSessionOut]:
    """List an owner's sessions, most recently active first."""
    limit, offset = _clamp_page(limit, offset)
    stmt = select(ChatSession).where(ChatSession.owner_id == owner_id)
    if not include_archived:
        stmt = stmt.where(ChatSession.is_archived.is_(False))
    stmt = (
        stmt.order_by(ChatSession.last_message_at.desc(), ChatSession.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return [ChatSessionOut.model_validate(s) for s in db.scalars(stmt).all()]


def _set_archived(db: Session, session_id: UUID, owner_id: UUID, archived: bool) -> ChatSessionOut:
    with transaction(db):
        chat_session = _get_owned_session(db, session_id, owner_id, lock=True)
        chat_session.is_archived = archived
        chat_session.updated_at = datetime.now(UTC)
        db.flush()

    logger.info(
        "chat_session_archived" if archived else "chat_session_unarchived",
        session_id=str(session_id),
    )
    return ChatSessionOut.model_validate(chat_session)


def archive_session(db: Session, session_id: UUID, owner_id: UUID) -> ChatSessionOut:
    """Archive an owned session. Archiving an archived session is a no-op."""
    return _set_archived(db, session_id, owner_id, True)


def unarchive_session(db: Session, session_id: UUID, owner_id: UUID) -> ChatSessionOut:
    """Return an archived session to the active list."""
    return _set_archived(db, session_id, owner_id, False)


def delete_session(db: Session, session_id: UUID, owner_id: UUID) -> None:
    """Delete an owned session and all of its messages.

    Messages are removed first, then the session row, in one transaction.
    """
    with transaction(db):
        chat_session = _get_owned_session(db, session_id, owner_id, lock=True)
        result = db.execute(delete(Message).where(Message.session_id == session_id))
        db.delete(chat_session)
        db.flush()

    logger.info(
        "chat_session_deleted",
        session_id=str(session_id),
        messages_deleted=result.rowcount,
    )


# =============================================================================
# Messages
# =============================================================================


def _insert_message(db: Session, chat_session: ChatSession, role: str, content: str) -> Message:
    """Append one message to a session locked by the caller."""
    seq, parent_id = next_message_position(db, chat_session.id)
    now = datetime.now(UTC)

    message = Message(
        session_id=chat_session.id,
        role=role,
        content=content,
        sequence_number=seq,
        parent_message_id=parent_id,
        created_at=now,
    )
    db.add(message)
    db.flush()

    chat_session.last_message_at = max(_as_utc(chat_session.last_message_at), now)
    chat_session.updated_at = now
    db.flush()
    return message


def append_message(
    db: Session, session_id: UUID, owner_id: UUID, role: str, content: str
) -> MessageOut:
    """Append a message to an owned session.

    Raises:
        ValidationError: E_INVALID_ROLE if role is not user/assistant/system.
        NotFoundError: E_SESSION_NOT_FOUND if absent or not owned.
    """
    if role not in VALID_ROLES:
        raise ValidationError(ApiErrorCode.E_INVALID_ROLE, f"Invalid message role: {role}")

    with transaction(db):
        chat_session = _get_owned_session(db, session_id, owner_id, lock=True)
        message = _insert_message(db, chat_session, role, content)

    logger.info(
        "message_appended",
        session_id=str(session_id),
        message_id=str(message.id),
        seq=message.sequence_number,
        role=role,
        content_chars=len(content),
    )
    return MessageOut.model_validate(message)


def append_exchange(
    db: Session,
    session_id: UUID,
    owner_id: UUID,
    user_content: str,
    assistant_content: str,
) -> tuple[MessageOut, MessageOut]:
    """Append a user message and the assistant reply as one unit.

    Both messages are written under one session lock, so they take
    consecutive sequence numbers and the reply's parent is the user message.

    Raises:
        NotFoundError: E_SESSION_NOT_FOUND if absent or not owned.
    """
    with transaction(db):
        chat_session = _get_owned_session(db, session_id, owner_id, lock=True)
        user_message = _insert_message(db, chat_session, MessageRole.user.value, user_content)
        assistant_message = _insert_message(
            db, chat_session, MessageRole.assistant.value, assistant_content
        )

    logger.info(
        "message_exchange_appended",
        session_id=str(session_id),
        user_message_id=str(user_message.id),
        assistant_message_id=str(assistant_message.id),
        seq=assistant_message.sequence_number,
    )
    return MessageOut.model_validate(user_message), MessageOut.model_validate(assistant_message)


def list_messages(
    db: Session,
    session_id: UUID,
    owner_id: UUID,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> list[MessageOut]:
    """List a session's messages in ascending sequence order."""
    _get_owned_session(db, session_id, owner_id)
    limit, offset = _clamp_page(limit, offset)
    stmt = (
        select(Message)
        .where(Message.session_id == session_id)
        .order_by(Message.sequence_number.asc())
        .limit(limit)
        .offset(offset)
    )
    return [MessageOut.model_validate(m) for m in db.scalars(stmt).all()]


def count_messages(db: Session, session_id: UUID) -> int:
    """Number of messages in a session."""
    stmt = select(func.count(Message.id)).where(Message.session_id == session_id)
    return db.scalar(stmt) or 0
