"""Tests for the credential store service.

- add/register: format check, encryption at rest, defaults, tier admission
- update: rename, deactivate/reactivate, key rotation
- decrypt on demand with ownership and activity checks
- usage accrual
- deactivate vs delete, with usage history surviving deletion
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import SecretStr
from sqlalchemy import select

from keyledger.db.models import Credential, UsageRecord
from keyledger.errors import (
    ApiErrorCode,
    DecryptionError,
    NotFoundError,
    TierLimitError,
    ValidationError,
)
from keyledger.schemas.credentials import CredentialCreate, CredentialPatch
from keyledger.services import credentials
from tests.factories import (
    DEFAULT_TEST_KEY,
    create_test_credential,
    create_test_provider,
    create_test_subscription,
    create_test_usage_record,
)

VALID_KEY = "sk-live-abcdefghijklmnopqrstuvwxyz12"


def _request(provider_id, display_name=None) -> CredentialCreate:
    return CredentialCreate(
        provider_id=provider_id, api_key=SecretStr(VALID_KEY), display_name=display_name
    )


class TestAddCredential:
    """Tests for add_credential."""

    def test_stores_only_ciphertext(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)

        out = credentials.add_credential(db_session, codec, owner_id, provider.id, VALID_KEY, "Work")

        row = db_session.get(Credential, out.id)
        assert row.ciphertext != VALID_KEY
        assert VALID_KEY not in row.ciphertext
        assert codec.decrypt(row.ciphertext) == VALID_KEY
        assert row.key_fingerprint == "yz12"

    def test_new_credential_defaults(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)

        out = credentials.add_credential(db_session, codec, owner_id, provider.id, VALID_KEY, "Work")

        assert out.is_active is True
        assert out.usage_stats == {}
        assert out.last_used_at is None
        assert out.display_name == "Work"
        assert out.owner_id == owner_id

    def test_out_model_has_no_ciphertext(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)

        out = credentials.add_credential(db_session, codec, owner_id, provider.id, VALID_KEY)

        dumped = out.model_dump()
        assert "ciphertext" not in dumped
        assert VALID_KEY not in str(dumped)

    def test_display_name_synthesized_from_time(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)

        out = credentials.add_credential(db_session, codec, owner_id, provider.id, VALID_KEY, "  ")

        assert out.display_name.startswith("API key ")
        assert str(out.created_at.year) in out.display_name

    def test_invalid_format_rejected_before_encrypt(self, db_session, owner_id):
        provider = create_test_provider(db_session)

        class ExplodingCodec:
            def encrypt(self, plaintext):
                raise AssertionError("codec must not be called")

        with pytest.raises(ValidationError) as exc_info:
            credentials.add_credential(db_session, ExplodingCodec(), owner_id, provider.id, "short")

        assert exc_info.value.code == ApiErrorCode.E_KEY_INVALID_FORMAT
        assert db_session.scalars(select(Credential)).all() == []

    def test_unknown_provider(self, db_session, codec, owner_id):
        with pytest.raises(NotFoundError) as exc_info:
            credentials.add_credential(db_session, codec, owner_id, uuid4(), VALID_KEY)

        assert exc_info.value.code == ApiErrorCode.E_PROVIDER_NOT_FOUND


class TestRegisterCredential:
    """register_credential stores a CredentialCreate request under the api_keys tier limit."""

    def test_free_tier_allows_one_active_key(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        credentials.register_credential(db_session, codec, owner_id, _request(provider.id))

        with pytest.raises(TierLimitError) as exc_info:
            credentials.register_credential(db_session, codec, owner_id, _request(provider.id))

        assert exc_info.value.code == ApiErrorCode.E_TIER_LIMIT_REACHED
        assert exc_info.value.status_code == 403

    def test_inactive_keys_do_not_count(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        create_test_credential(db_session, codec, owner_id, provider.id, is_active=False)

        out = credentials.register_credential(db_session, codec, owner_id, _request(provider.id))

        assert out.is_active is True

    def test_request_fields_are_used(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)

        out = credentials.register_credential(
            db_session, codec, owner_id, _request(provider.id, display_name="  Work  ")
        )

        assert out.provider_id == provider.id
        assert out.display_name == "Work"
        assert out.key_fingerprint == VALID_KEY[-4:]

    def test_blank_request_name_is_synthesized(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)

        out = credentials.register_credential(
            db_session, codec, owner_id, _request(provider.id, display_name="   ")
        )

        assert out.display_name.startswith("API key ")

    def test_plus_tier_allows_three(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        create_test_subscription(db_session, owner_id, tier="plus")

        for _ in range(3):
            credentials.register_credential(db_session, codec, owner_id, _request(provider.id))

        with pytest.raises(TierLimitError):
            credentials.register_credential(db_session, codec, owner_id, _request(provider.id))


class TestUpdateCredential:
    """Tests for update_credential."""

    def test_rename(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        out = credentials.update_credential(
            db_session, codec, cred.id, owner_id, CredentialPatch(display_name="Personal")
        )

        assert out.display_name == "Personal"

    def test_rotate_key_reencrypts(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)
        old_ciphertext = cred.ciphertext

        out = credentials.update_credential(
            db_session, codec, cred.id, owner_id, CredentialPatch(api_key=SecretStr(VALID_KEY))
        )

        row = db_session.get(Credential, cred.id)
        assert row.ciphertext != old_ciphertext
        assert codec.decrypt(row.ciphertext) == VALID_KEY
        assert out.key_fingerprint == "yz12"

    def test_rotate_with_invalid_key_leaves_row_untouched(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)
        old_ciphertext = cred.ciphertext

        with pytest.raises(ValidationError):
            credentials.update_credential(
                db_session, codec, cred.id, owner_id, CredentialPatch(api_key=SecretStr("tiny"))
            )

        assert db_session.get(Credential, cred.id).ciphertext == old_ciphertext

    def test_reactivate(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id, is_active=False)

        out = credentials.update_credential(
            db_session, codec, cred.id, owner_id, CredentialPatch(is_active=True)
        )

        assert out.is_active is True

    def test_patch_repr_hides_key(self):
        patch = CredentialPatch(api_key=SecretStr(VALID_KEY))
        assert VALID_KEY not in repr(patch)
        assert VALID_KEY not in patch.model_dump_json()

    def test_other_owner_gets_not_found(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        with pytest.raises(NotFoundError) as exc_info:
            credentials.update_credential(
                db_session, codec, cred.id, uuid4(), CredentialPatch(display_name="x")
            )
        assert exc_info.value.code == ApiErrorCode.E_CREDENTIAL_NOT_FOUND


class TestGetDecryptedSecret:
    """Tests for get_decrypted_secret."""

    def test_returns_plaintext(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        assert credentials.get_decrypted_secret(db_session, codec, cred.id, owner_id) == DEFAULT_TEST_KEY

    def test_not_owner(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        with pytest.raises(NotFoundError):
            credentials.get_decrypted_secret(db_session, codec, cred.id, uuid4())

    def test_inactive(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id, is_active=False)

        with pytest.raises(NotFoundError):
            credentials.get_decrypted_secret(db_session, codec, cred.id, owner_id)

    def test_missing(self, db_session, codec, owner_id):
        with pytest.raises(NotFoundError):
            credentials.get_decrypted_secret(db_session, codec, uuid4(), owner_id)

    def test_corrupt_ciphertext(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)
        cred.ciphertext = "v1.garbage"
        db_session.commit()

        with pytest.raises(DecryptionError):
            credentials.get_decrypted_secret(db_session, codec, cred.id, owner_id)


class TestRecordUsage:
    """Tests for credential usage accrual."""

    def test_accumulates(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        credentials.record_usage(db_session, cred.id, owner_id, 100, 0.5)
        out = credentials.record_usage(db_session, cred.id, owner_id, 50, 0.25)

        assert out.usage_stats["total_tokens"] == 150
        assert out.usage_stats["total_cost"] == pytest.approx(0.75)
        day_keys = [k for k in out.usage_stats if k.startswith("usage_")]
        assert len(day_keys) == 1
        assert out.usage_stats[day_keys[0]] == 150
        assert out.last_used_at is not None

    def test_persisted(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        credentials.record_usage(db_session, cred.id, owner_id, 10, 0.1)
        db_session.expire_all()

        row = db_session.get(Credential, cred.id)
        assert row.usage_stats["total_tokens"] == 10

    def test_negative_rejected(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        with pytest.raises(ValidationError):
            credentials.record_usage(db_session, cred.id, owner_id, -1, 0.0)


class TestDeactivateAndDelete:
    """Soft vs hard removal."""

    def test_deactivate_keeps_row(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        out = credentials.deactivate_credential(db_session, cred.id, owner_id)

        assert out.is_active is False
        assert db_session.get(Credential, cred.id) is not None
        assert credentials.get_active_credential(db_session, owner_id, provider.id) is None

    def test_delete_keeps_usage_history(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)
        record = create_test_usage_record(db_session, owner_id, cred.id)

        credentials.delete_credential(db_session, cred.id, owner_id)
        db_session.expire_all()

        assert db_session.get(Credential, cred.id) is None
        surviving = db_session.get(UsageRecord, record.id)
        assert surviving is not None
        assert surviving.credential_id == cred.id

    def test_delete_other_owner(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        with pytest.raises(NotFoundError):
            credentials.delete_credential(db_session, cred.id, uuid4())


class TestQueries:
    """Listing and active-credential lookup."""

    def test_list_filters(self, db_session, codec, owner_id):
        p1 = create_test_provider(db_session)
        p2 = create_test_provider(db_session)
        create_test_credential(db_session, codec, owner_id, p1.id)
        create_test_credential(db_session, codec, owner_id, p2.id, is_active=False)
        create_test_credential(db_session, codec, uuid4(), p1.id)

        assert len(credentials.list_credentials(db_session, owner_id)) == 2
        assert len(credentials.list_credentials(db_session, owner_id, provider_id=p1.id)) == 1
        assert len(credentials.list_credentials(db_session, owner_id, active_only=True)) == 1

    def test_get_credential(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        cred = create_test_credential(db_session, codec, owner_id, provider.id)

        assert credentials.get_credential(db_session, cred.id, owner_id).id == cred.id
        with pytest.raises(NotFoundError):
            credentials.get_credential(db_session, cred.id, uuid4())

    def test_active_credential_is_oldest_active(self, db_session, codec, owner_id):
        provider = create_test_provider(db_session)
        base = datetime(2026, 1, 1, tzinfo=UTC)
        create_test_credential(
            db_session, codec, owner_id, provider.id, is_active=False, created_at=base
        )
        older = create_test_credential(
            db_session, codec, owner_id, provider.id, created_at=base + timedelta(days=1)
        )
        create_test_credential(
            db_session, codec, owner_id, provider.id, created_at=base + timedelta(days=2)
        )

        active = credentials.get_active_credential(db_session, owner_id, provider.id)

        assert active.id == older.id
