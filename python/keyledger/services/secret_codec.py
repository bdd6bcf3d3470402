"""Secret codec: reversible encryption of credential secrets.

The codec is an explicit handle passed into the credential services:
- RemoteSecretCodec talks to the external encryption service over HTTP
- LocalSecretCodec encrypts in-process with the master key (local/test,
  or deployments without the remote service)

Contract required of every implementation:
- decrypt(encrypt(x)) == x
- encrypt failures raise EncryptionError, decrypt failures (including
  tokens this codec did not produce) raise DecryptionError
- no retries; the caller decides
"""

from abc import ABC, abstractmethod

import httpx

from keyledger.config import get_settings
from keyledger.errors import ApiErrorCode, DecryptionError, EncryptionError
from keyledger.logging import get_logger
from keyledger.services.crypto import CryptoError, open_secret, seal_secret

logger = get_logger(__name__)

MIN_KEY_LENGTH = 8


def verify_key_format(candidate: str) -> bool:
    """Best-effort plausibility check for a provider API key.

    A fast pre-submission filter only: True does not mean the provider will
    accept the key. Shapes that are not recognised pass, so new provider
    key formats are never blocked.

    Rules, after stripping surrounding whitespace:
    - fewer than 8 characters: False
    - "sk-" prefix (OpenAI, Anthropic style): length must exceed 20
    - 32 or more alphanumeric characters: True
    - anything else: True
    """
    key = candidate.strip()
    if len(key) < MIN_KEY_LENGTH:
        return False
    if key.startswith("sk-"):
        return len(key) > 20
    # Long alphanumeric tokens and unrecognised shapes both pass
    return True


class SecretCodecBase(ABC):
    """Abstract base class for secret codec implementations."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret.

        Returns:
            Opaque ciphertext token, safe to persist.

        Raises:
            EncryptionError: If the secret could not be encrypted.
        """
        ...

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token produced by encrypt().

        Raises:
            DecryptionError: If the token is malformed or cannot be decrypted.
        """
        ...


class RemoteSecretCodec(SecretCodecBase):
    """Codec backed by the external encryption service.

    Wire contract: ``POST {"operation": "encrypt"|"decrypt", "text": ...}``
    with the caller's bearer token, answered by ``{"result": ...}``. Any
    non-2xx response is a hard failure.
    """

    def __init__(self, service_url: str, access_token: str | None, timeout_s: float = 10.0):
        self._service_url = service_url
        self._access_token = access_token
        self._timeout_s = timeout_s

    def encrypt(self, plaintext: str) -> str:
        return self._call("encrypt", plaintext, EncryptionError, ApiErrorCode.E_ENCRYPTION_FAILED)

    def decrypt(self, ciphertext: str) -> str:
        return self._call("decrypt", ciphertext, DecryptionError, ApiErrorCode.E_DECRYPTION_FAILED)

    def _call(
        self,
        operation: str,
        text: str,
        error_cls: type[EncryptionError] | type[DecryptionError],
        failure_code: ApiErrorCode,
    ) -> str:
        if not self._access_token:
            raise error_cls("Not authenticated", code=ApiErrorCode.E_CODEC_UNAUTHENTICATED)

        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            with httpx.Client() as client:
                response = client.post(
                    self._service_url,
                    headers=headers,
                    json={"operation": operation, "text": text},
                    timeout=self._timeout_s,
                )
        except httpx.TimeoutException as e:
            logger.warning("codec_call_timeout", operation=operation)
            raise error_cls(f"Codec service timed out during {operation}", code=failure_code) from e
        except httpx.HTTPError as e:
            logger.warning("codec_call_failed", operation=operation, error_type=type(e).__name__)
            raise error_cls(f"Codec service unreachable during {operation}", code=failure_code) from e

        if not response.is_success:
            logger.warning("codec_call_rejected", operation=operation, status=response.status_code)
            raise error_cls(
                f"Codec service returned {response.status_code} during {operation}",
                code=failure_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise error_cls("Codec service returned a non-JSON body", code=failure_code) from e

        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, str):
            raise error_cls("Codec service response is missing result", code=failure_code)

        return result


class LocalSecretCodec(SecretCodecBase):
    """In-process codec using the XChaCha20-Poly1305 master key."""

    def encrypt(self, plaintext: str) -> str:
        try:
            return seal_secret(plaintext)
        except CryptoError as e:
            raise EncryptionError(str(e)) from e

    def decrypt(self, ciphertext: str) -> str:
        try:
            return open_secret(ciphertext)
        except CryptoError as e:
            raise DecryptionError(str(e)) from e


def get_secret_codec(access_token: str | None = None) -> SecretCodecBase:
    """Get the configured secret codec.

    Args:
        access_token: Bearer token of the calling user, forwarded to the
            remote encryption service.

    Returns:
        RemoteSecretCodec if CODEC_SERVICE_URL is set, LocalSecretCodec otherwise.
    """
    settings = get_settings()
    if settings.uses_remote_codec:
        return RemoteSecretCodec(
            service_url=settings.codec_service_url,
            access_token=access_token,
            timeout_s=settings.codec_timeout_s,
        )
    return LocalSecretCodec()
