import uuid
from dataclasses import dataclass, field
from typing import Protocol

import requests

from journey_engine.core.config import settings
from journey_engine.core.errors import ConfigurationError, TransientError


@dataclass(frozen=True)
class MessageSendRequest:
    recipient: str
    template_id: str
    content: str
    variables: dict[str, str] = field(default_factory=dict)
    reference: str | None = None


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str | None
    status: str
    error: str | None = None


class MessagingProvider(Protocol):
    name: str

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubWhatsAppProvider:
    name = "whatsapp_stub"

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        return MessageSendResult(
            provider=self.name,
            message_id=f"msg-{uuid.uuid4().hex[:14]}",
            status="queued",
        )


class WhatsAppCloudProvider:
    """Template sends through the WhatsApp Cloud API.

    Timeouts, connection errors, 429 and 5xx responses raise TransientError so the engine
    retries them; other 4xx responses are permanent and come back as a failed result.
    """

    name = "whatsapp_cloud"

    def __init__(self, session: requests.Session | None = None):
        self._session = session or requests.Session()

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
            raise ConfigurationError("WhatsApp Cloud API credentials are not configured")

        url = f"{settings.whatsapp_api_base_url.rstrip('/')}/{settings.whatsapp_phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": request.recipient,
            "type": "template",
            "template": {
                "name": request.template_id,
                "language": {"code": "en"},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": value} for value in request.variables.values()],
                    }
                ],
            },
        }
        try:
            response = self._session.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {settings.whatsapp_access_token}"},
                timeout=settings.messaging_request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransientError(f"WhatsApp request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"WhatsApp API returned {response.status_code}")
        if response.status_code >= 400:
            return MessageSendResult(
                provider=self.name,
                message_id=None,
                status="failed",
                error=f"WhatsApp API returned {response.status_code}: {response.text[:200]}",
            )

        body = response.json()
        messages = body.get("messages") if isinstance(body, dict) else None
        message_id = messages[0].get("id") if isinstance(messages, list) and messages else None
        return MessageSendResult(provider=self.name, message_id=message_id, status="queued")


_MESSAGING_PROVIDERS: dict[str, MessagingProvider] = {
    "whatsapp_stub": StubWhatsAppProvider(),
    "whatsapp_cloud": WhatsAppCloudProvider(),
}


def register_messaging_provider(provider: MessagingProvider) -> None:
    _MESSAGING_PROVIDERS[provider.name] = provider


def get_messaging_provider(name: str | None) -> MessagingProvider:
    normalized = (name or settings.messaging_provider_default or "").strip().lower()
    provider = _MESSAGING_PROVIDERS.get(normalized)
    if not provider:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ConfigurationError(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider
