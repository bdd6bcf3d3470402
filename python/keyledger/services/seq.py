"""Sequence assignment helper for message ordering.

Message order within a chat session is fixed by sequence_number, which is
gap-free from 1. Assignment is serialized per session:

- The chat session row is locked with FOR UPDATE (on SQLite every
  transaction already starts with BEGIN IMMEDIATE, which serializes writers)
- The highest existing message is read under that lock
- The new message takes max + 1 and points its parent at that message

UNIQUE(session_id, sequence_number) backs this up: a writer that somehow
bypassed the lock fails on insert instead of persisting a duplicate.

Both helpers MUST be called within an existing transaction context. They
do NOT open or commit their own transaction.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from keyledger.db.models import ChatSession, Message
from keyledger.logging import get_logger

logger = get_logger(__name__)


def lock_chat_session(db: Session, session_id: UUID) -> ChatSession | None:
    """Lock a chat session row for the rest of the transaction.

    Returns:
        The freshly loaded session, or None if it does not exist.
    """
    stmt = (
        select(ChatSession)
        .where(ChatSession.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def next_message_position(db: Session, session_id: UUID) -> tuple[int, UUID | None]:
    """Position for the next message of a locked session.

    Returns:
        (sequence_number, parent_message_id): 1 and None for an empty session.
    """
    stmt = (
        select(Message.id, Message.sequence_number)
        .where(Message.session_id == session_id)
        .order_by(Message.sequence_number.desc())
        .limit(1)
    )
    row = db.execute(stmt).first()

    if row is None:
        seq, parent_id = 1, None
    else:
        seq, parent_id = row.sequence_number + 1, row.id

    logger.debug("assigned_message_seq", session_id=str(session_id), seq=seq)
    return seq, parent_id
