"""Send message service - the chat flow that ties the core together.

Phase 0 - Pre-validation (reads only):
- Message content check (non-blank, length limit)
- Session ownership
- Tier admission for two more messages in the session
- Active credential and provider resolution

Phase 1 - Execute (no DB transaction held):
- Call the provider gateway with the credential ciphertext

Phase 2 - Record (one transaction):
- Append the user message and the assistant reply as a pair

Phase 3 - Meter (best-effort):
- Append a usage record
- Accrue the usage into the credential's statistics

Invariants:
- No DB transaction held during the provider call
- A failed provider call appends nothing and meters nothing
- Metering failures are logged and never reach the caller
"""

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from keyledger.config import get_settings
from keyledger.errors import ApiErrorCode, PreconditionError, ValidationError
from keyledger.logging import get_logger, set_flow_id
from keyledger.schemas.chat import SendMessageResponse
from keyledger.services import credentials, usage
from keyledger.services.chat_sessions import append_exchange, get_session
from keyledger.services.provider_gateway import ProviderGatewayBase
from keyledger.services.providers import get_provider_or_404
from keyledger.services.redact import hash_text, safe_kv
from keyledger.services.tiers import TierResource, require_admission

logger = get_logger(__name__)


def validate_content(content: str, max_chars: int) -> None:
    """Reject blank or over-long user messages."""
    if not content or not content.strip():
        raise ValidationError(ApiErrorCode.E_MESSAGE_EMPTY, "Message cannot be empty")
    if len(content) > max_chars:
        raise ValidationError(
            ApiErrorCode.E_MESSAGE_TOO_LONG,
            f"Message exceeds {max_chars} characters",
        )


def _meter(
    db: Session,
    owner_id: UUID,
    credential_id: UUID,
    session_id: UUID,
    message_id: UUID,
    tokens_used: int,
    cost: float,
) -> UUID | None:
    """Record usage for a completed call. Never raises."""
    record = usage.record_usage(
        db,
        owner_id=owner_id,
        credential_id=credential_id,
        tokens_used=tokens_used,
        cost=cost,
        session_id=session_id,
        message_id=message_id,
    )

    try:
        credentials.record_usage(db, credential_id, owner_id, tokens_used, cost)
    except Exception as e:
        logger.warning(
            "credential_usage_accrual_failed",
            credential_id=str(credential_id),
            error_type=type(e).__name__,
        )

    return record.id if record is not None else None


def send_message(
    db: Session,
    gateway: ProviderGatewayBase,
    owner_id: UUID,
    session_id: UUID,
    content: str,
    settings: dict[str, Any] | None = None,
) -> SendMessageResponse:
    """Send a user message through the session's provider and store the exchange.

    Args:
        db: Database session.
        gateway: Provider gateway handle.
        owner_id: User sending the message.
        session_id: Chat session to send in.
        content: User message content.
        settings: Per-call settings, overriding the session's settings.

    Returns:
        SendMessageResponse with the session, both messages and the usage figures.

    Raises:
        ValidationError: E_MESSAGE_EMPTY / E_MESSAGE_TOO_LONG.
        NotFoundError: If the session (or its provider) does not exist or is not owned.
        TierLimitError: If the session is at the tier's message limit.
        PreconditionError: E_NO_ACTIVE_CREDENTIAL if no active key exists for the provider.
        ProviderError: If the provider call fails. Nothing is stored in that case.
    """
    set_flow_id(uuid4().hex)
    try:
        # Phase 0: Pre-validation
        validate_content(content, get_settings().max_message_chars)

        chat_session = get_session(db, session_id, owner_id)
        require_admission(
            db, owner_id, TierResource.messages_per_session, session_id=session_id, additional=2
        )

        credential = credentials.get_active_credential(db, owner_id, chat_session.provider_id)
        if credential is None:
            raise PreconditionError(
                ApiErrorCode.E_NO_ACTIVE_CREDENTIAL,
                "No active API key for this session's provider",
            )
        provider = get_provider_or_404(db, chat_session.provider_id)

        credential_id = credential.id
        ciphertext = credential.ciphertext
        provider_name = provider.name
        call_settings = {**chat_session.settings, **(settings or {})}

        # Release the read transaction before going over the network
        db.commit()

        logger.info(
            "send_message_started",
            **safe_kv(
                session_id=str(session_id),
                credential_id=str(credential_id),
                fingerprint=credential.key_fingerprint,
                provider=provider_name,
                model_id=chat_session.model_id,
                content_chars=len(content),
                content_sha256=hash_text(content),
            ),
        )

        # Phase 1: Execute
        reply = gateway.send(
            message=content,
            credential_ciphertext=ciphertext,
            provider_name=provider_name,
            model_id=chat_session.model_id,
            settings=call_settings,
            session_id=session_id,
        )

        # Phase 2: Record
        user_message, assistant_message = append_exchange(
            db, session_id, owner_id, content, reply.response
        )

        # Phase 3: Meter
        usage_record_id = _meter(
            db,
            owner_id=owner_id,
            credential_id=credential_id,
            session_id=session_id,
            message_id=assistant_message.id,
            tokens_used=reply.tokens_used,
            cost=reply.cost,
        )

        logger.info(
            "send_message_completed",
            session_id=str(session_id),
            assistant_message_id=str(assistant_message.id),
            tokens_used=reply.tokens_used,
            cost=reply.cost,
            metered=usage_record_id is not None,
        )

        return SendMessageResponse(
            session=get_session(db, session_id, owner_id),
            user_message=user_message,
            assistant_message=assistant_message,
            tokens_used=reply.tokens_used,
            cost=reply.cost,
            usage_record_id=usage_record_id,
        )
    finally:
        set_flow_id(None)
