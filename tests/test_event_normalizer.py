from datetime import datetime, timezone

from crm_automation.schemas.events import DeliveryEvent, LeadgenEvent, MessageEvent, PostbackEvent, ReadEvent
from crm_automation.services.event_normalizer import normalize_webhook_event, parse_timestamp


def whatsapp_payload(messages=None, statuses=None):
    value = {"messaging_product": "whatsapp", "metadata": {"phone_number_id": "PNID"}}
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}],
    }


class TestWhatsApp:
    def test_text_message(self):
        payload = whatsapp_payload(
            messages=[{"from": "971500000001", "id": "wamid.1", "timestamp": "1735725600", "type": "text", "text": {"body": "Hi"}}]
        )

        events = normalize_webhook_event(payload)

        assert len(events) == 1
        event = events[0]
        assert isinstance(event, MessageEvent)
        assert event.channel == "whatsapp"
        assert event.sender_id == "971500000001"
        assert event.recipient_id == "PNID"
        assert event.message_id == "wamid.1"
        assert event.text == "Hi"
        assert event.timestamp == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_interactive_reply_uses_title(self):
        payload = whatsapp_payload(
            messages=[
                {
                    "from": "971500000001",
                    "id": "wamid.2",
                    "type": "interactive",
                    "interactive": {"type": "button_reply", "button_reply": {"id": "b1", "title": "Golden visa"}},
                }
            ]
        )

        events = normalize_webhook_event(payload)

        assert events[0].text == "Golden visa"

    def test_statuses_become_receipts(self):
        payload = whatsapp_payload(
            statuses=[
                {"id": "wamid.out1", "status": "delivered", "timestamp": "1735725600", "recipient_id": "9715"},
                {"id": "wamid.out1", "status": "read", "timestamp": "1735725660", "recipient_id": "9715"},
                {"id": "wamid.out2", "status": "sent", "timestamp": "1735725600"},
            ]
        )

        events = normalize_webhook_event(payload)

        assert [type(e) for e in events] == [DeliveryEvent, ReadEvent]
        assert events[0].message_ids == ["wamid.out1"]


class TestMessenger:
    def test_page_message_and_echo(self):
        payload = {
            "object": "page",
            "entry": [
                {
                    "id": "PAGE",
                    "messaging": [
                        {"sender": {"id": "PSID"}, "recipient": {"id": "PAGE"}, "timestamp": 1735725600000, "message": {"mid": "m.1", "text": "hello"}},
                        {"sender": {"id": "PAGE"}, "recipient": {"id": "PSID"}, "message": {"mid": "m.2", "text": "echo", "is_echo": True}},
                    ],
                }
            ],
        }

        events = normalize_webhook_event(payload)

        assert len(events) == 1
        assert events[0].channel == "facebook"
        assert events[0].source_id == "PAGE"
        # milliseconds are detected
        assert events[0].timestamp == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_postback_carries_title_and_payload(self):
        payload = {
            "object": "page",
            "entry": [
                {
                    "id": "PAGE",
                    "messaging": [
                        {"sender": {"id": "PSID"}, "postback": {"mid": "m.3", "title": "Business setup", "payload": "SETUP"}}
                    ],
                }
            ],
        }

        event = normalize_webhook_event(payload)[0]

        assert isinstance(event, PostbackEvent)
        assert event.text == "Business setup"
        assert event.payload == "SETUP"

    def test_read_watermark(self):
        payload = {
            "object": "page",
            "entry": [{"id": "PAGE", "messaging": [{"sender": {"id": "PSID"}, "read": {"watermark": 1735725600000}}]}],
        }

        event = normalize_webhook_event(payload)[0]

        assert isinstance(event, ReadEvent)
        assert event.message_ids == []
        assert event.watermark == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


class TestInstagram:
    def test_messaging_entry(self):
        payload = {
            "object": "instagram",
            "entry": [{"id": "IGID", "messaging": [{"sender": {"id": "IGSID"}, "message": {"mid": "ig.1", "text": "price?"}}]}],
        }

        event = normalize_webhook_event(payload)[0]

        assert event.channel == "instagram"
        assert event.sender_id == "IGSID"

    def test_changes_value_messaging_event(self):
        payload = {
            "object": "instagram",
            "entry": [
                {
                    "id": "IGID",
                    "changes": [
                        {"field": "messages", "value": {"sender": {"id": "IGSID"}, "message": {"mid": "ig.2", "text": "hi"}}}
                    ],
                }
            ],
        }

        event = normalize_webhook_event(payload)[0]

        assert event.message_id == "ig.2"
        assert event.channel == "instagram"


class TestLeadgen:
    def test_leadgen_change(self):
        payload = {
            "object": "page",
            "entry": [
                {
                    "id": "PAGE",
                    "changes": [
                        {"field": "leadgen", "value": {"leadgen_id": "LG1", "form_id": "F1", "created_time": 1735725600}}
                    ],
                }
            ],
        }

        event = normalize_webhook_event(payload)[0]

        assert isinstance(event, LeadgenEvent)
        assert event.leadgen_id == "LG1"
        assert event.page_id == "PAGE"


class TestTotality:
    def test_unknown_object(self):
        assert normalize_webhook_event({"object": "user", "entry": [{}]}) == []

    def test_garbage_input(self):
        assert normalize_webhook_event(None) == []
        assert normalize_webhook_event("not json") == []
        assert normalize_webhook_event({"object": "page", "entry": "oops"}) == []
        assert normalize_webhook_event({"object": "page", "entry": [{"messaging": [None, 5, {"sender": 3}]}]}) == []

    def test_parse_timestamp(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("abc") is None
        assert parse_timestamp(1735725600) == parse_timestamp(1735725600000)
