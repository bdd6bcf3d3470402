"""Tests for the send-message flow.

Tests cover:
- Happy path: user/assistant pair stored, usage metered, credential stats accrued
- Gateway receives the ciphertext, never the plaintext key
- Settings precedence: call > session
- Provider failure stores and meters nothing
- Preconditions: content checks, ownership, active credential, tier limit
- Metering failures never reach the caller
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from keyledger.config import clear_settings_cache
from keyledger.db.models import Message, UsageRecord
from keyledger.errors import (
    ApiErrorCode,
    NotFoundError,
    PreconditionError,
    ProviderError,
    TierLimitError,
    ValidationError,
)
from keyledger.services import credentials
from keyledger.services.chat_sessions import list_messages
from keyledger.services.provider_gateway import FakeProviderGateway
from keyledger.services.send_message import send_message, validate_content
from tests.factories import (
    DEFAULT_TEST_KEY,
    add_test_messages,
    create_test_chat_session,
    create_test_credential,
    create_test_provider,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def provider(db_session):
    return create_test_provider(db_session, name="openai")


@pytest.fixture
def credential(db_session, codec, owner_id, provider):
    return create_test_credential(db_session, codec, owner_id, provider.id)


@pytest.fixture
def chat(db_session, owner_id, provider, credential):
    return create_test_chat_session(
        db_session,
        owner_id,
        provider.id,
        model_id="gpt-4o",
        settings={"temperature": 0.2, "max_tokens": 256},
    )


def _count(db_session, model) -> int:
    return db_session.scalar(select(func.count(model.id)))


# =============================================================================
# Happy path
# =============================================================================


class TestSendMessageHappyPath:
    """A successful send stores the exchange and meters it."""

    def test_stores_exchange(self, db_session, gateway, owner_id, chat):
        result = send_message(db_session, gateway, owner_id, chat.id, "What is a nonce?")

        assert result.user_message.role == "user"
        assert result.user_message.content == "What is a nonce?"
        assert result.assistant_message.role == "assistant"
        assert result.assistant_message.content == "echo: What is a nonce?"
        assert result.user_message.sequence_number == 1
        assert result.assistant_message.sequence_number == 2
        assert result.assistant_message.parent_message_id == result.user_message.id

        stored = list_messages(db_session, chat.id, owner_id)
        assert [m.id for m in stored] == [result.user_message.id, result.assistant_message.id]

    def test_meters_usage(self, db_session, owner_id, chat, credential):
        gateway = FakeProviderGateway(reply_text="ok", tokens_used=150, cost=0.003)

        result = send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert result.tokens_used == 150
        assert result.cost == pytest.approx(0.003)
        assert result.usage_record_id is not None

        record = db_session.get(UsageRecord, result.usage_record_id)
        assert record.credential_id == credential.id
        assert record.session_id == chat.id
        assert record.message_id == result.assistant_message.id
        assert record.request_type == "chat"

        stats = credentials.get_credential(db_session, credential.id, owner_id).usage_stats
        assert stats["total_tokens"] == 150
        assert stats["total_cost"] == pytest.approx(0.003)

    def test_second_send_continues_sequence(self, db_session, gateway, owner_id, chat):
        send_message(db_session, gateway, owner_id, chat.id, "one")
        result = send_message(db_session, gateway, owner_id, chat.id, "two")

        assert result.user_message.sequence_number == 3
        assert result.assistant_message.sequence_number == 4

    def test_gateway_gets_ciphertext_not_plaintext(
        self, db_session, gateway, owner_id, chat, credential
    ):
        send_message(db_session, gateway, owner_id, chat.id, "hello")

        call = gateway.calls[0]
        assert call.credential_ciphertext == credential.ciphertext
        assert DEFAULT_TEST_KEY not in call.credential_ciphertext
        assert call.provider_name == "openai"
        assert call.model_id == "gpt-4o"
        assert call.session_id == chat.id

    def test_call_settings_override_session(self, db_session, gateway, owner_id, chat):
        send_message(
            db_session, gateway, owner_id, chat.id, "hello", settings={"temperature": 0.9}
        )

        assert gateway.calls[0].settings == {"temperature": 0.9, "max_tokens": 256}

    def test_bumps_last_message_at(self, db_session, gateway, owner_id, chat):
        before = chat.last_message_at.replace(tzinfo=None)

        result = send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert result.session.last_message_at.replace(tzinfo=None) >= before


# =============================================================================
# Failures before or during the provider call
# =============================================================================


class TestSendMessageFailures:
    """Failed sends leave no trace in the ledger or the meter."""

    def test_provider_error_stores_nothing(self, db_session, owner_id, chat):
        gateway = FakeProviderGateway(error=ProviderError("upstream exploded"))

        with pytest.raises(ProviderError):
            send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert _count(db_session, Message) == 0
        assert _count(db_session, UsageRecord) == 0

    def test_provider_timeout_code(self, db_session, owner_id, chat):
        gateway = FakeProviderGateway(
            error=ProviderError("slow", code=ApiErrorCode.E_PROVIDER_TIMEOUT)
        )

        with pytest.raises(ProviderError) as exc_info:
            send_message(db_session, gateway, owner_id, chat.id, "hello")
        assert exc_info.value.status_code == 504

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    def test_blank_content(self, db_session, gateway, owner_id, chat, content):
        with pytest.raises(ValidationError) as exc_info:
            send_message(db_session, gateway, owner_id, chat.id, content)

        assert exc_info.value.code == ApiErrorCode.E_MESSAGE_EMPTY
        assert gateway.calls == []

    def test_content_too_long(self, db_session, gateway, owner_id, chat, monkeypatch):
        monkeypatch.setenv("MAX_MESSAGE_CHARS", "10")
        clear_settings_cache()

        with pytest.raises(ValidationError) as exc_info:
            send_message(db_session, gateway, owner_id, chat.id, "x" * 11)

        assert exc_info.value.code == ApiErrorCode.E_MESSAGE_TOO_LONG
        assert gateway.calls == []

    def test_other_owner(self, db_session, gateway, chat):
        with pytest.raises(NotFoundError) as exc_info:
            send_message(db_session, gateway, uuid4(), chat.id, "hello")

        assert exc_info.value.code == ApiErrorCode.E_SESSION_NOT_FOUND
        assert gateway.calls == []

    def test_no_active_credential(self, db_session, gateway, owner_id, provider):
        chat = create_test_chat_session(db_session, owner_id, provider.id)

        with pytest.raises(PreconditionError) as exc_info:
            send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert exc_info.value.code == ApiErrorCode.E_NO_ACTIVE_CREDENTIAL
        assert gateway.calls == []

    def test_deactivated_credential(self, db_session, gateway, owner_id, chat, credential):
        credentials.deactivate_credential(db_session, credential.id, owner_id)

        with pytest.raises(PreconditionError):
            send_message(db_session, gateway, owner_id, chat.id, "hello")

    def test_tier_message_limit(self, db_session, gateway, owner_id, chat):
        # free tier allows 50; a send adds two
        add_test_messages(db_session, chat.id, 49)

        with pytest.raises(TierLimitError):
            send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert gateway.calls == []
        assert _count(db_session, Message) == 49


# =============================================================================
# Metering is best-effort
# =============================================================================


class TestSendMessageMetering:
    """Metering failures are logged and swallowed."""

    def test_meter_failure_keeps_exchange(self, db_session, owner_id, chat, credential):
        # Negative figures fail both the usage record and the credential accrual
        gateway = FakeProviderGateway(reply_text="ok", tokens_used=-1, cost=0.0)

        result = send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert result.usage_record_id is None
        assert result.assistant_message.content == "ok"
        assert _count(db_session, Message) == 2
        assert _count(db_session, UsageRecord) == 0
        assert credentials.get_credential(db_session, credential.id, owner_id).usage_stats == {}

    def test_credential_accrual_error_is_swallowed(
        self, db_session, gateway, owner_id, chat, monkeypatch
    ):
        def boom(*args, **kwargs):
            raise RuntimeError("stats store down")

        monkeypatch.setattr(credentials, "record_usage", boom)

        result = send_message(db_session, gateway, owner_id, chat.id, "hello")

        assert result.usage_record_id is not None
        assert _count(db_session, UsageRecord) == 1


class TestValidateContent:
    """Tests for validate_content."""

    def test_accepts_at_limit(self):
        validate_content("x" * 5, max_chars=5)

    def test_rejects_over_limit(self):
        with pytest.raises(ValidationError):
            validate_content("x" * 6, max_chars=5)
