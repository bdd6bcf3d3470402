"""Redaction, hashing, and log guard utilities.

- hash_text: stable SHA-256 hex digest for log correlation
- safe_kv: log guard that blocks forbidden keys at call site

Never-log policy:
- API keys (plaintext or decrypted) and their ciphertexts
- Bearer tokens and passwords
- Message content

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
- Credential id and key fingerprint, token counts, cost
"""

import hashlib
import os

import structlog

FORBIDDEN_KEYS = frozenset(
    {
        "api_key",
        "secret",
        "plaintext",
        "ciphertext",
        "content",
        "token",
        "bearer",
        "password",
        "message_text",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def hash_text(value: str) -> str:
    """SHA-256 hex digest of a string, for log correlation without exposing content."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. In staging/prod, logs a warning instead.

    Usage:
        logger.info("credential_created", **safe_kv(
            credential_id=str(cred.id),
            fingerprint=cred.key_fingerprint,
            content_chars=1234,       # OK: _chars suffix
            # api_key="sk-...",       # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for KEYLEDGER_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.
    """
    violations = [key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("KEYLEDGER_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        structlog.get_logger("keyledger.services.redact").warning(
            "safe_kv_violation", forbidden_keys=violations
        )
        for key in violations:
            kwargs.pop(key)

    return kwargs
