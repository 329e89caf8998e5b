import json
from unittest.mock import patch

import httpx

from crm_automation.services.messaging_provider import (
    MetaGraphProvider,
    UnconfiguredProvider,
    get_provider,
)


def make_provider(handler, channel="whatsapp"):
    return MetaGraphProvider(
        channel=channel,
        sender_id="PN-1",
        access_token="token",
        transport=httpx.MockTransport(handler),
    )


class TestMetaGraphProvider:
    def test_whatsapp_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.abc"}]})

        result = make_provider(handler).send_text("971500000001", "Hello")

        assert result.ok is True
        assert result.message_id == "wamid.abc"
        assert seen["url"].endswith("/PN-1/messages")
        assert seen["auth"] == "Bearer token"
        assert seen["body"]["messaging_product"] == "whatsapp"
        assert seen["body"]["to"] == "971500000001"
        assert seen["body"]["text"]["body"] == "Hello"

    def test_page_payload(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"recipient_id": "IGSID", "message_id": "m_1"})

        result = make_provider(handler, channel="instagram").send_text("IGSID", "Hi")

        assert result.message_id == "m_1"
        assert seen["body"]["recipient"] == {"id": "IGSID"}
        assert seen["body"]["message"] == {"text": "Hi"}

    def test_error_response(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})

        result = make_provider(handler).send_text("971", "Hello")

        assert result.ok is False
        assert result.error == "Invalid parameter"
        assert result.timed_out is False

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        result = make_provider(handler).send_text("971", "Hello")

        assert result.ok is False
        assert result.timed_out is True

    def test_missing_message_id(self):
        result = make_provider(lambda request: httpx.Response(200, json={})).send_text("971", "Hello")

        assert result.ok is False


class TestGetProvider:
    @patch("crm_automation.services.messaging_provider.settings.whatsapp_access_token", None)
    def test_unconfigured_channel(self):
        provider = get_provider("whatsapp")

        assert isinstance(provider, UnconfiguredProvider)
        assert provider.send_text("971", "Hi").ok is False

    @patch("crm_automation.services.messaging_provider.settings.whatsapp_phone_number_id", "PN-1")
    @patch("crm_automation.services.messaging_provider.settings.whatsapp_access_token", "token")
    def test_whatsapp_configured(self):
        provider = get_provider("WhatsApp")

        assert isinstance(provider, MetaGraphProvider)
        assert provider.sender_id == "PN-1"
