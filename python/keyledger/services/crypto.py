"""Local authenticated encryption for credential secrets.

Implements XChaCha20-Poly1305 (PyNaCl SecretBox) under a master key loaded
from the KEYLEDGER_KEY_ENCRYPTION_KEY environment variable. This is the
in-process backend of the secret codec; deployments that use the remote
encryption service never touch it.

Token format:
    v1.<base64url(nonce || ciphertext)>

Security invariants:
- Never log plaintext keys or tokens
- Master key is validated on first use (32 bytes)
- A fresh random nonce is drawn for every seal, so sealing the same
  plaintext twice gives different tokens
- Opening fails if the token was tampered with or sealed under another key
"""

import base64
import binascii
import os
from functools import lru_cache

import nacl.exceptions
from nacl.secret import SecretBox

from keyledger.logging import get_logger

logger = get_logger(__name__)

MASTER_KEY_ENV = "KEYLEDGER_KEY_ENCRYPTION_KEY"

# XChaCha20-Poly1305 nonce size (24 bytes)
NONCE_SIZE = SecretBox.NONCE_SIZE

# Master key size (32 bytes for XChaCha20)
MASTER_KEY_SIZE = SecretBox.KEY_SIZE

TOKEN_VERSION = "v1"


class CryptoError(Exception):
    """Raised when cryptographic operations fail."""

    pass


@lru_cache(maxsize=1)
def _get_master_key() -> bytes:
    """Load and validate the master key from environment.

    Raises:
        CryptoError: If the key is missing, invalid base64, or wrong size.
    """
    key_b64 = os.environ.get(MASTER_KEY_ENV)
    if not key_b64:
        raise CryptoError(f"{MASTER_KEY_ENV} environment variable is not set")

    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"{MASTER_KEY_ENV} is not valid base64: {e}") from e

    if len(key) != MASTER_KEY_SIZE:
        raise CryptoError(f"{MASTER_KEY_ENV} must be {MASTER_KEY_SIZE} bytes, got {len(key)} bytes")

    return key


def require_master_key() -> bytes:
    """Load and validate the master encryption key."""
    return _get_master_key()


def clear_master_key_cache() -> None:
    """Clear the cached master key.

    Useful for testing or key rotation scenarios.
    """
    _get_master_key.cache_clear()


def seal_secret(plaintext: str) -> str:
    """Encrypt a secret into a versioned text token.

    Args:
        plaintext: The secret to encrypt.

    Returns:
        Token of the form ``v1.<base64url(nonce || ciphertext)>``.

    Raises:
        CryptoError: If the master key is unavailable or encryption fails.
    """
    box = SecretBox(require_master_key())
    nonce = os.urandom(NONCE_SIZE)
    try:
        # EncryptedMessage is nonce || ciphertext || tag
        sealed = box.encrypt(plaintext.encode("utf-8"), nonce)
    except nacl.exceptions.CryptoError as e:
        logger.error("secret_seal_failed", error_type=type(e).__name__)
        raise CryptoError("Encryption failed") from e

    encoded = base64.urlsafe_b64encode(bytes(sealed)).decode("ascii")
    return f"{TOKEN_VERSION}.{encoded}"


def open_secret(token: str) -> str:
    """Decrypt a token produced by seal_secret.

    Raises:
        CryptoError: On unknown version, malformed encoding, truncated
            payload, failed authentication, or a missing master key.
    """
    version, sep, encoded = token.partition(".")
    if not sep or version != TOKEN_VERSION:
        raise CryptoError("Unknown token version")

    try:
        payload = base64.urlsafe_b64decode(encoded.encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise CryptoError("Token is not valid base64") from e

    if len(payload) < NONCE_SIZE + SecretBox.MACBYTES:
        raise CryptoError("Token payload is truncated")

    box = SecretBox(require_master_key())
    try:
        plaintext = box.decrypt(payload[NONCE_SIZE:], payload[:NONCE_SIZE])
        return plaintext.decode("utf-8")
    except (nacl.exceptions.CryptoError, UnicodeDecodeError) as e:
        logger.warning("secret_open_failed", error_type=type(e).__name__)
        raise CryptoError("Decryption failed") from e


def compute_key_fingerprint(api_key: str) -> str:
    """Compute a fingerprint for display purposes.

    The fingerprint is the last 4 characters of the API key.
    This is safe for logging and display while not revealing the full key.
    """
    if len(api_key) < 4:
        return api_key
    return api_key[-4:]
