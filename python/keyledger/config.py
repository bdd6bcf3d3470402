"""Application settings loaded from environment variables.

Environment Configuration:
    KEYLEDGER_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)

Secret Codec Configuration:
    CODEC_SERVICE_URL: Remote encryption service endpoint. When unset, the
        local XChaCha20-Poly1305 codec is used.
    CODEC_TIMEOUT_S: Per-call deadline for the codec service
    KEYLEDGER_KEY_ENCRYPTION_KEY: Base64-encoded 32-byte master key for the local codec

Provider Gateway Configuration:
    PROVIDER_GATEWAY_URL: Provider send-message endpoint (required in staging/prod)
    PROVIDER_TIMEOUT_S: Per-call deadline for provider calls

Note: In staging/prod, at least one codec backend must be configured.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - staging/prod need CODEC_SERVICE_URL or KEYLEDGER_KEY_ENCRYPTION_KEY
    - staging/prod need PROVIDER_GATEWAY_URL
    - timeouts must be positive
    """

    keyledger_env: Environment = Field(default=Environment.LOCAL, alias="KEYLEDGER_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]

    # Secret codec
    codec_service_url: str | None = Field(default=None, alias="CODEC_SERVICE_URL")
    codec_timeout_s: float = Field(default=10.0, alias="CODEC_TIMEOUT_S")
    key_encryption_key: str | None = Field(default=None, alias="KEYLEDGER_KEY_ENCRYPTION_KEY")

    # Provider gateway
    provider_gateway_url: str | None = Field(default=None, alias="PROVIDER_GATEWAY_URL")
    provider_timeout_s: float = Field(default=45.0, alias="PROVIDER_TIMEOUT_S")

    # Chat limits
    max_message_chars: int = Field(default=20_000, alias="MAX_MESSAGE_CHARS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure deployed environments have real collaborators configured."""
        if self.codec_timeout_s <= 0:
            raise ValueError("CODEC_TIMEOUT_S must be > 0")
        if self.provider_timeout_s <= 0:
            raise ValueError("PROVIDER_TIMEOUT_S must be > 0")
        if self.max_message_chars < 1:
            raise ValueError("MAX_MESSAGE_CHARS must be >= 1")

        if self.is_deployed:
            if not self.codec_service_url and not self.key_encryption_key:
                raise ValueError(
                    f"CODEC_SERVICE_URL or KEYLEDGER_KEY_ENCRYPTION_KEY is required for "
                    f"KEYLEDGER_ENV={self.keyledger_env.value}"
                )
            if not self.provider_gateway_url:
                raise ValueError(
                    f"PROVIDER_GATEWAY_URL is required for KEYLEDGER_ENV={self.keyledger_env.value}"
                )

        return self

    @property
    def is_deployed(self) -> bool:
        """Whether this is a staging or production environment."""
        return self.keyledger_env in (Environment.STAGING, Environment.PROD)

    @property
    def uses_remote_codec(self) -> bool:
        """Whether secrets go through the remote encryption service."""
        return bool(self.codec_service_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
