from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from crm_automation.config import settings
from crm_automation.logging_config import get_logger

logger = get_logger("messaging_provider")

GRAPH_BASE_URL = "https://graph.facebook.com"


@dataclass
class ProviderSendResult:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False


class MessagingProvider(ABC):
    """Abstract base class for outbound channel providers."""

    channel: str = ""

    @abstractmethod
    def send_text(self, recipient: str, text: str) -> ProviderSendResult:
        """Send a plain-text message. Must not block longer than its configured timeout."""
        pass


class MetaGraphProvider(MessagingProvider):
    """WhatsApp Cloud API and Messenger/Instagram Send API over the Graph API."""

    def __init__(
        self,
        channel: str,
        sender_id: str,
        access_token: str,
        api_version: str = "v18.0",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.channel = channel
        self.sender_id = sender_id
        self.access_token = access_token
        self.base_url = f"{GRAPH_BASE_URL}/{api_version}"
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _payload(self, recipient: str, text: str) -> dict:
        if self.channel == "whatsapp":
            return {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient,
                "type": "text",
                "text": {"body": text, "preview_url": False},
            }
        return {
            "recipient": {"id": recipient},
            "messaging_type": "RESPONSE",
            "message": {"text": text},
        }

    @staticmethod
    def _message_id(data: dict) -> Optional[str]:
        messages = data.get("messages")
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            return messages[0].get("id")
        return data.get("message_id")

    def send_text(self, recipient: str, text: str) -> ProviderSendResult:
        url = f"{self.base_url}/{self.sender_id}/messages"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    url,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    json=self._payload(recipient, text),
                )
        except httpx.TimeoutException as e:
            logger.warning(
                "Provider send timed out",
                extra={"context": {"channel": self.channel, "error": str(e)}},
            )
            return ProviderSendResult(ok=False, error=f"timeout: {e}", timed_out=True)
        except httpx.HTTPError as e:
            logger.error(f"Graph API error: {e}", extra={"context": {"channel": self.channel}})
            return ProviderSendResult(ok=False, error=str(e))

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = data.get("error", {}).get("message") if isinstance(data.get("error"), dict) else None
            return ProviderSendResult(ok=False, error=error or f"HTTP {response.status_code}")

        message_id = self._message_id(data)
        if not message_id:
            return ProviderSendResult(ok=False, error="Provider response carried no message id")
        return ProviderSendResult(ok=True, message_id=message_id)


class UnconfiguredProvider(MessagingProvider):
    """Stands in for channels without credentials; every send fails cleanly."""

    def __init__(self, channel: str):
        self.channel = channel

    def send_text(self, recipient: str, text: str) -> ProviderSendResult:
        return ProviderSendResult(ok=False, error=f"No provider configured for channel {self.channel}")


def get_provider(channel: str) -> MessagingProvider:
    channel = (channel or "").lower()
    if channel == "whatsapp" and settings.whatsapp_phone_number_id and settings.whatsapp_access_token:
        return MetaGraphProvider(
            channel="whatsapp",
            sender_id=settings.whatsapp_phone_number_id,
            access_token=settings.whatsapp_access_token,
            api_version=settings.meta_graph_api_version,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    if channel in ("facebook", "instagram") and settings.meta_page_id and settings.meta_page_access_token:
        return MetaGraphProvider(
            channel=channel,
            sender_id=settings.meta_page_id,
            access_token=settings.meta_page_access_token,
            api_version=settings.meta_graph_api_version,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    return UnconfiguredProvider(channel)


def get_outbound_provider() -> Optional[MessagingProvider]:
    """FastAPI dependency. None lets each send pick the provider for its channel."""
    return None
