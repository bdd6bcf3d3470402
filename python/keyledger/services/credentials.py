"""Credential store service layer.

Owns the lifecycle of a user's provider API keys:
- Add (format check, encrypt, persist)
- Update (rename, (de)activate, rotate the key)
- Decrypt on demand for provider calls
- Accrue usage statistics
- Deactivate (soft) and delete (hard)

Security invariants:
- Plaintext keys never persist and never reach a log event
- Only the ciphertext and a 4-character fingerprint are stored
- CredentialOut never carries the ciphertext
- A credential that is missing or owned by someone else is reported as
  not found, so ownership cannot be probed

Deleting a credential leaves its usage records in place; their
credential_id keeps pointing at the removed row for audit.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from keyledger.db.models import Credential
from keyledger.db.session import transaction
from keyledger.errors import ApiErrorCode, NotFoundError, ValidationError
from keyledger.logging import get_logger
from keyledger.schemas.credentials import CredentialCreate, CredentialOut, CredentialPatch
from keyledger.services.crypto import compute_key_fingerprint
from keyledger.services.providers import get_provider_or_404
from keyledger.services.redact import safe_kv
from keyledger.services.secret_codec import SecretCodecBase, verify_key_format
from keyledger.services.tiers import TierResource, require_admission

logger = get_logger(__name__)


def _to_out(credential: Credential) -> CredentialOut:
    return CredentialOut.model_validate(credential)


def _get_owned(
    db: Session, credential_id: UUID, owner_id: UUID, for_update: bool = False
) -> Credential:
    """Load a credential owned by owner_id or raise NotFoundError."""
    stmt = select(Credential).where(
        Credential.id == credential_id,
        Credential.owner_id == owner_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    credential = db.scalars(stmt).first()
    if credential is None:
        raise NotFoundError(ApiErrorCode.E_CREDENTIAL_NOT_FOUND, "Credential not found")
    return credential


def _checked_key(api_key: str) -> str:
    """Strip and format-check a plaintext key."""
    if not verify_key_format(api_key):
        raise ValidationError(ApiErrorCode.E_KEY_INVALID_FORMAT, "API key format is invalid")
    return api_key.strip()


def add_credential(
    db: Session,
    codec: SecretCodecBase,
    owner_id: UUID,
    provider_id: UUID,
    api_key: str,
    display_name: str | None = None,
) -> CredentialOut:
    """Encrypt and store a new provider key.

    The new credential is active, has empty usage stats and has never been
    used. Without a display name one is derived from the current time.

    Raises:
        ValidationError: E_KEY_INVALID_FORMAT if the key fails the format check.
        NotFoundError: E_PROVIDER_NOT_FOUND if the provider does not exist.
        EncryptionError: If the codec cannot encrypt the key.
    """
    api_key = _checked_key(api_key)
    ciphertext = codec.encrypt(api_key)
    fingerprint = compute_key_fingerprint(api_key)

    now = datetime.now(UTC)
    if not display_name or not display_name.strip():
        display_name = f"API key {now:%Y-%m-%d %H:%M:%S}"

    with transaction(db):
        get_provider_or_404(db, provider_id)
        credential = Credential(
            owner_id=owner_id,
            provider_id=provider_id,
            ciphertext=ciphertext,
            key_fingerprint=fingerprint,
            display_name=display_name.strip(),
            is_active=True,
            usage_stats={},
            last_used_at=None,
            created_at=now,
            updated_at=now,
        )
        db.add(credential)
        db.flush()

    logger.info(
        "credential_created",
        **safe_kv(
            credential_id=str(credential.id),
            provider_id=str(provider_id),
            fingerprint=fingerprint,
        ),
    )
    return _to_out(credential)


def register_credential(
    db: Session,
    codec: SecretCodecBase,
    owner_id: UUID,
    data: CredentialCreate,
) -> CredentialOut:
    """Add a credential from a request after checking the owner's tier admits one more key.

    Raises:
        TierLimitError: If the owner already holds the tier's number of active keys.
        Plus everything add_credential raises.
    """
    require_admission(db, owner_id, TierResource.api_keys)
    return add_credential(
        db,
        codec,
        owner_id,
        data.provider_id,
        data.api_key.get_secret_value(),
        data.display_name,
    )


def update_credential(
    db: Session,
    codec: SecretCodecBase,
    credential_id: UUID,
    owner_id: UUID,
    patch: CredentialPatch,
) -> CredentialOut:
    """Apply a partial update to a credential.

    A new api_key in the patch is format-checked and re-encrypted; the
    fingerprint follows the new key. Reactivation is is_active=True.

    Raises:
        NotFoundError: E_CREDENTIAL_NOT_FOUND if absent or not owned.
        ValidationError: E_KEY_INVALID_FORMAT if the new key fails the format check.
        EncryptionError: If the codec cannot encrypt the new key.
    """
    ciphertext = None
    fingerprint = None
    if patch.api_key is not None:
        new_key = _checked_key(patch.api_key.get_secret_value())
        ciphertext = codec.encrypt(new_key)
        fingerprint = compute_key_fingerprint(new_key)

    with transaction(db):
        credential = _get_owned(db, credential_id, owner_id, for_update=True)
        if patch.display_name is not None and patch.display_name.strip():
            credential.display_name = patch.display_name.strip()
        if patch.is_active is not None:
            credential.is_active = patch.is_active
        if ciphertext is not None:
            credential.ciphertext = ciphertext
            credential.key_fingerprint = fingerprint
        credential.updated_at = datetime.now(UTC)
        db.flush()

    logger.info(
        "credential_updated",
        **safe_kv(
            credential_id=str(credential.id),
            fingerprint=credential.key_fingerprint,
            key_rotated=ciphertext is not None,
        ),
    )
    return _to_out(credential)


def get_decrypted_secret(
    db: Session, codec: SecretCodecBase, credential_id: UUID, owner_id: UUID
) -> str:
    """Decrypt an owned, active credential for a provider call.

    The returned plaintext must only be handed to the provider client;
    it never goes into a response model or a log event.

    Raises:
        NotFoundError: E_CREDENTIAL_NOT_FOUND if absent, inactive or not owned.
        DecryptionError: If the codec cannot decrypt the stored ciphertext.
    """
    credential = _get_owned(db, credential_id, owner_id)
    if not credential.is_active:
        raise NotFoundError(ApiErrorCode.E_CREDENTIAL_NOT_FOUND, "Credential not found")
    return codec.decrypt(credential.ciphertext)


def record_usage(
    db: Session,
    credential_id: UUID,
    owner_id: UUID,
    tokens_used: int,
    cost: float,
) -> CredentialOut:
    """Fold one provider call into the credential's usage statistics.

    Adds to total_tokens, total_cost and usage_<YYYY-MM-DD> (UTC day) and
    sets last_used_at. The row is read under a row lock so concurrent
    accruals serialize instead of overwriting each other.

    Raises:
        ValidationError: If tokens_used or cost is negative.
        NotFoundError: E_CREDENTIAL_NOT_FOUND if absent or not owned.
    """
    if tokens_used < 0 or cost < 0:
        raise ValidationError(
            ApiErrorCode.E_INVALID_REQUEST, "tokens_used and cost must be non-negative"
        )

    now = datetime.now(UTC)
    day_key = f"usage_{now.date().isoformat()}"

    with transaction(db):
        credential = _get_owned(db, credential_id, owner_id, for_update=True)
        stats = dict(credential.usage_stats or {})
        stats["total_tokens"] = stats.get("total_tokens", 0) + tokens_used
        stats["total_cost"] = stats.get("total_cost", 0.0) + cost
        stats[day_key] = stats.get(day_key, 0) + tokens_used
        # New dict so the JSON column is marked dirty
        credential.usage_stats = stats
        credential.last_used_at = now
        credential.updated_at = now
        db.flush()

    logger.debug(
        "credential_usage_accrued",
        credential_id=str(credential_id),
        tokens_used=tokens_used,
        cost=cost,
    )
    return _to_out(credential)


def deactivate_credential(db: Session, credential_id: UUID, owner_id: UUID) -> CredentialOut:
    """Soft-remove a credential. The row and its ciphertext stay in place."""
    with transaction(db):
        credential = _get_owned(db, credential_id, owner_id, for_update=True)
        credential.is_active = False
        credential.updated_at = datetime.now(UTC)
        db.flush()

    logger.info(
        "credential_deactivated",
        credential_id=str(credential_id),
        fingerprint=credential.key_fingerprint,
    )
    return _to_out(credential)


def delete_credential(db: Session, credential_id: UUID, owner_id: UUID) -> None:
    """Hard-delete a credential. Usage records referencing it are kept."""
    with transaction(db):
        credential = _get_owned(db, credential_id, owner_id, for_update=True)
        fingerprint = credential.key_fingerprint
        db.delete(credential)

    logger.info("credential_deleted", credential_id=str(credential_id), fingerprint=fingerprint)


def get_credential(db: Session, credential_id: UUID, owner_id: UUID) -> CredentialOut:
    """Get one owned credential (active or not)."""
    return _to_out(_get_owned(db, credential_id, owner_id))


def list_credentials(
    db: Session,
    owner_id: UUID,
    provider_id: UUID | None = None,
    active_only: bool = False,
) -> list[CredentialOut]:
    """List an owner's credentials, newest first."""
    stmt = select(Credential).where(Credential.owner_id == owner_id)
    if provider_id is not None:
        stmt = stmt.where(Credential.provider_id == provider_id)
    if active_only:
        stmt = stmt.where(Credential.is_active.is_(True))
    stmt = stmt.order_by(Credential.created_at.desc(), Credential.id.desc())
    return [_to_out(c) for c in db.scalars(stmt).all()]


def get_active_credential(db: Session, owner_id: UUID, provider_id: UUID) -> Credential | None:
    """The owner's oldest active credential for a provider, or None.

    Returns the ORM row: the chat flow needs the ciphertext, which the
    outward schema does not carry.
    """
    stmt = (
        select(Credential)
        .where(
            Credential.owner_id == owner_id,
            Credential.provider_id == provider_id,
            Credential.is_active.is_(True),
        )
        .order_by(Credential.created_at.asc(), Credential.id.asc())
        .limit(1)
    )
    return db.scalars(stmt).first()

