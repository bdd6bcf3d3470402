"""Provider gateway: the send-message call to an AI provider.

The provider wire formats live behind an external gateway endpoint; this
module only speaks the gateway contract:

Request:
{
  "message": "<user message>",
  "chat_session_id": "<uuid>",
  "encrypted_key": "<credential ciphertext>",
  "provider": "<provider name>",
  "model_id": "<model id or null>",
  "settings": {...}
}

Response (2xx):
{"response": "<assistant text>", "tokens_used": 123, "cost": 0.0012}

Response (non-2xx):
{"error": "<description>"}

The gateway receives the ciphertext, never the plaintext key, and
decrypts on its side.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import httpx

from keyledger.config import get_settings
from keyledger.errors import ApiErrorCode, ProviderError
from keyledger.logging import get_logger

logger = get_logger(__name__)

CONNECT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class ProviderReply:
    """Normalized result of one provider call."""

    response: str
    tokens_used: int
    cost: float


class ProviderGatewayBase(ABC):
    """Abstract base class for provider gateway implementations."""

    @abstractmethod
    def send(
        self,
        message: str,
        credential_ciphertext: str,
        provider_name: str,
        model_id: str | None,
        settings: dict[str, Any],
        session_id: UUID | None = None,
    ) -> ProviderReply:
        """Send one user message to a provider.

        Raises:
            ProviderError: E_PROVIDER_TIMEOUT on timeout, E_PROVIDER_ERROR
                on any other failure.
        """
        ...


class ProviderGateway(ProviderGatewayBase):
    """Production gateway client over httpx."""

    def __init__(
        self,
        endpoint_url: str,
        access_token: str | None = None,
        timeout_s: float = 45.0,
        client: httpx.Client | None = None,
    ):
        self._endpoint_url = endpoint_url
        self._access_token = access_token
        self._timeout_s = timeout_s
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    def _post(self, body: dict[str, Any]) -> httpx.Response:
        timeout = httpx.Timeout(self._timeout_s, connect=CONNECT_TIMEOUT_S)
        if self._client is not None:
            return self._client.post(
                self._endpoint_url, headers=self._headers(), json=body, timeout=timeout
            )
        with httpx.Client() as client:
            return client.post(self._endpoint_url, headers=self._headers(), json=body, timeout=timeout)

    def send(
        self,
        message: str,
        credential_ciphertext: str,
        provider_name: str,
        model_id: str | None,
        settings: dict[str, Any],
        session_id: UUID | None = None,
    ) -> ProviderReply:
        body = {
            "message": message,
            "chat_session_id": str(session_id) if session_id else None,
            "encrypted_key": credential_ciphertext,
            "provider": provider_name,
            "model_id": model_id,
            "settings": settings,
        }

        try:
            response = self._post(body)
        except httpx.TimeoutException as e:
            logger.warning("provider_call_timeout", provider=provider_name, model_id=model_id)
            raise ProviderError(
                f"{provider_name} did not answer in time", code=ApiErrorCode.E_PROVIDER_TIMEOUT
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "provider_call_failed", provider=provider_name, error_type=type(e).__name__
            )
            raise ProviderError(f"{provider_name} is unreachable") from e

        if not response.is_success:
            detail = _error_detail(response)
            logger.warning(
                "provider_call_rejected",
                provider=provider_name,
                status=response.status_code,
            )
            raise ProviderError(detail or f"{provider_name} returned {response.status_code}")

        return _parse_reply(response, provider_name)


def _error_detail(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return None


def _parse_reply(response: httpx.Response, provider_name: str) -> ProviderReply:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(f"{provider_name} returned a non-JSON body") from e

    if not isinstance(data, dict) or not isinstance(data.get("response"), str):
        raise ProviderError(f"{provider_name} returned a malformed reply")

    try:
        tokens_used = int(data.get("tokens_used") or 0)
        cost = float(data.get("cost") or 0.0)
    except (TypeError, ValueError) as e:
        raise ProviderError(f"{provider_name} returned malformed usage figures") from e

    if tokens_used < 0 or cost < 0:
        raise ProviderError(f"{provider_name} returned negative usage figures")

    return ProviderReply(response=data["response"], tokens_used=tokens_used, cost=cost)


@dataclass
class SentMessage:
    """One call captured by FakeProviderGateway."""

    message: str
    credential_ciphertext: str
    provider_name: str
    model_id: str | None
    settings: dict[str, Any] = field(default_factory=dict)
    session_id: UUID | None = None


class FakeProviderGateway(ProviderGatewayBase):
    """Fake gateway for tests and local development.

    Replies deterministically and records every call.
    """

    def __init__(
        self,
        reply_text: str | None = None,
        tokens_used: int = 42,
        cost: float = 0.0021,
        error: ProviderError | None = None,
    ):
        self.reply_text = reply_text
        self.tokens_used = tokens_used
        self.cost = cost
        self.error = error
        self.calls: list[SentMessage] = []

    def send(
        self,
        message: str,
        credential_ciphertext: str,
        provider_name: str,
        model_id: str | None,
        settings: dict[str, Any],
        session_id: UUID | None = None,
    ) -> ProviderReply:
        self.calls.append(
            SentMessage(
                message=message,
                credential_ciphertext=credential_ciphertext,
                provider_name=provider_name,
                model_id=model_id,
                settings=dict(settings),
                session_id=session_id,
            )
        )
        if self.error is not None:
            raise self.error
        text = self.reply_text if self.reply_text is not None else f"echo: {message}"
        return ProviderReply(response=text, tokens_used=self.tokens_used, cost=self.cost)


def get_provider_gateway(access_token: str | None = None) -> ProviderGatewayBase:
    """Get the configured provider gateway.

    Returns:
        ProviderGateway if PROVIDER_GATEWAY_URL is set, FakeProviderGateway otherwise.
        Settings validation guarantees the URL is set in staging/prod.
    """
    settings = get_settings()
    if settings.provider_gateway_url:
        return ProviderGateway(
            endpoint_url=settings.provider_gateway_url,
            access_token=access_token,
            timeout_s=settings.provider_timeout_s,
        )
    return FakeProviderGateway()
