from unittest.mock import MagicMock, Mock, patch

import httpx

from crm_automation.services.alert_service import alert_error, alert_warning, send_alert


class TestSendAlert:
    @patch("crm_automation.services.alert_service.settings.alert_bot_token", None)
    @patch("crm_automation.services.alert_service.settings.alert_chat_id", None)
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    @patch("crm_automation.services.alert_service.settings.alert_bot_token", "test-token")
    @patch("crm_automation.services.alert_service.settings.alert_chat_id", "test-chat")
    @patch("crm_automation.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        result = send_alert("ERROR", "Outbound send failed", {"conversation_id": 12})

        assert result is True
        url = mock_client.post.call_args[0][0]
        assert "api.telegram.org/bottest-token" in url
        json_data = mock_client.post.call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "conversation_id: 12" in json_data["text"]

    @patch("crm_automation.services.alert_service.settings.alert_bot_token", "test-token")
    @patch("crm_automation.services.alert_service.settings.alert_chat_id", "test-chat")
    @patch("crm_automation.services.alert_service.httpx.Client")
    def test_returns_false_on_http_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectError("refused")

        assert send_alert("ERROR", "Test") is False

    @patch("crm_automation.services.alert_service.settings.alert_bot_token", "test-token")
    @patch("crm_automation.services.alert_service.settings.alert_chat_id", "test-chat")
    @patch("crm_automation.services.alert_service.httpx.Client")
    def test_non_200_is_failure(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=502)

        assert send_alert("WARNING", "Test") is False


class TestAlertHelpers:
    @patch("crm_automation.services.alert_service.send_alert")
    def test_alert_warning(self, mock_send):
        mock_send.return_value = True
        alert_warning("Send outcome unknown", {"dedupe_key": "k"})
        mock_send.assert_called_once_with("WARNING", "Send outcome unknown", {"dedupe_key": "k"})

    @patch("crm_automation.services.alert_service.send_alert")
    def test_alert_error(self, mock_send):
        alert_error("Rule failed")
        mock_send.assert_called_once_with("ERROR", "Rule failed", None)
