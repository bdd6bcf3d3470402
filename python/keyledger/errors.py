"""Error definitions for keyledger.

Every error raised by the service layer is an ApiError carrying a stable code.
The code maps to an HTTP status so an outer shell can render errors without
knowing the service internals.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes.

    Format: E_CATEGORY_NAME
    """

    # Codec authentication (401)
    E_CODEC_UNAUTHENTICATED = "E_CODEC_UNAUTHENTICATED"

    # Tier admission (403)
    E_TIER_LIMIT_REACHED = "E_TIER_LIMIT_REACHED"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_PROVIDER_NOT_FOUND = "E_PROVIDER_NOT_FOUND"
    E_CREDENTIAL_NOT_FOUND = "E_CREDENTIAL_NOT_FOUND"
    E_SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"
    E_SUBSCRIPTION_NOT_FOUND = "E_SUBSCRIPTION_NOT_FOUND"

    # Precondition errors (409)
    E_NO_ACTIVE_CREDENTIAL = "E_NO_ACTIVE_CREDENTIAL"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_KEY_INVALID_FORMAT = "E_KEY_INVALID_FORMAT"
    E_INVALID_ROLE = "E_INVALID_ROLE"
    E_MESSAGE_EMPTY = "E_MESSAGE_EMPTY"
    E_MESSAGE_TOO_LONG = "E_MESSAGE_TOO_LONG"

    # Server errors
    E_ENCRYPTION_FAILED = "E_ENCRYPTION_FAILED"  # 500
    E_DECRYPTION_FAILED = "E_DECRYPTION_FAILED"  # 500
    E_STORE_ERROR = "E_STORE_ERROR"  # 500
    E_INTERNAL = "E_INTERNAL"  # 500
    E_PROVIDER_ERROR = "E_PROVIDER_ERROR"  # 502
    E_PROVIDER_TIMEOUT = "E_PROVIDER_TIMEOUT"  # 504


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_CODEC_UNAUTHENTICATED: 401,
    ApiErrorCode.E_TIER_LIMIT_REACHED: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_PROVIDER_NOT_FOUND: 404,
    ApiErrorCode.E_CREDENTIAL_NOT_FOUND: 404,
    ApiErrorCode.E_SESSION_NOT_FOUND: 404,
    ApiErrorCode.E_SUBSCRIPTION_NOT_FOUND: 404,
    ApiErrorCode.E_NO_ACTIVE_CREDENTIAL: 409,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_KEY_INVALID_FORMAT: 400,
    ApiErrorCode.E_INVALID_ROLE: 400,
    ApiErrorCode.E_MESSAGE_EMPTY: 400,
    ApiErrorCode.E_MESSAGE_TOO_LONG: 400,
    ApiErrorCode.E_ENCRYPTION_FAILED: 500,
    ApiErrorCode.E_DECRYPTION_FAILED: 500,
    ApiErrorCode.E_STORE_ERROR: 500,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_PROVIDER_ERROR: 502,
    ApiErrorCode.E_PROVIDER_TIMEOUT: 504,
}


class ApiError(Exception):
    """Base exception for keyledger errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class ValidationError(ApiError):
    """Malformed caller input (e.g. a key that fails the format check)."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class NotFoundError(ApiError):
    """Entity is missing or not owned by the caller."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class PreconditionError(ApiError):
    """A required precondition does not hold (e.g. no active credential)."""

    def __init__(
        self,
        code: ApiErrorCode = ApiErrorCode.E_NO_ACTIVE_CREDENTIAL,
        message: str = "Precondition failed",
    ):
        super().__init__(code, message)


class TierLimitError(ApiError):
    """The owner's subscription tier does not admit one more resource."""

    def __init__(self, message: str = "Subscription tier limit reached"):
        super().__init__(ApiErrorCode.E_TIER_LIMIT_REACHED, message)


class CodecError(ApiError):
    """Base class for secret codec failures."""


class EncryptionError(CodecError):
    """The secret could not be encrypted."""

    def __init__(
        self, message: str = "Encryption failed", code: ApiErrorCode = ApiErrorCode.E_ENCRYPTION_FAILED
    ):
        super().__init__(code, message)


class DecryptionError(CodecError):
    """The ciphertext could not be decrypted (including malformed input)."""

    def __init__(
        self, message: str = "Decryption failed", code: ApiErrorCode = ApiErrorCode.E_DECRYPTION_FAILED
    ):
        super().__init__(code, message)


class StoreError(ApiError):
    """Generic persistence failure passed through from the store layer."""

    def __init__(self, message: str = "Store operation failed"):
        super().__init__(ApiErrorCode.E_STORE_ERROR, message)


class ProviderError(ApiError):
    """The upstream AI provider call failed."""

    def __init__(
        self, message: str = "Provider call failed", code: ApiErrorCode = ApiErrorCode.E_PROVIDER_ERROR
    ):
        super().__init__(code, message)
