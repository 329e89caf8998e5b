from datetime import timezone
from unittest.mock import patch

from conftest import FakeProvider, make_rule
from crm_automation.models import Contact, Conversation, DedupeLedgerEntry, Lead, Message, Task
from crm_automation.services.conversation_service import load_conversation_state
from crm_automation.services.inbound_service import process_webhook_payload
from crm_automation.services.state_machine import QualificationStage


def whatsapp_payload(text="Hi, I need a golden visa. I am Indian", message_id="wamid.in.1", sender="971500000009"):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "PN-1"},
                            "contacts": [{"wa_id": sender, "profile": {"name": "Ravi"}}],
                            "messages": [
                                {
                                    "from": sender,
                                    "id": message_id,
                                    "timestamp": "1735725600",
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def status_payload(message_id, status="delivered"):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "statuses": [
                                {
                                    "id": message_id,
                                    "status": status,
                                    "timestamp": "1735729200",
                                    "recipient_id": "971500000009",
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def leadgen_payload(leadgen_id="LG-1"):
    return {
        "object": "page",
        "entry": [
            {
                "id": "PAGE-1",
                "changes": [
                    {
                        "field": "leadgen",
                        "value": {"leadgen_id": leadgen_id, "form_id": "FORM-1", "created_time": 1735725600},
                    }
                ],
            }
        ],
    }


class TestInboundMessage:
    def test_creates_records(self, db, now):
        response = process_webhook_payload(db, whatsapp_payload(), now=now)

        assert response.success is True
        assert response.processed == 1
        contact = db.query(Contact).one()
        assert contact.phone == "971500000009"
        lead = db.query(Lead).one()
        assert lead.contact_id == contact.id
        conversation = db.query(Conversation).one()
        assert conversation.channel == "whatsapp"
        assert conversation.last_inbound_at is not None
        message = db.query(Message).one()
        assert message.direction == "INBOUND"
        assert message.provider_message_id == "wamid.in.1"
        ledger = db.query(DedupeLedgerEntry).one()
        assert ledger.status == "COMPLETED"

    def test_replay_is_duplicate(self, db, now):
        process_webhook_payload(db, whatsapp_payload(), now=now)
        response = process_webhook_payload(db, whatsapp_payload(), now=now)

        assert response.processed == 0
        assert response.duplicates == 1
        assert db.query(Message).count() == 1

    def test_updates_qualification_state(self, db, now):
        process_webhook_payload(db, whatsapp_payload(), now=now)

        conversation = db.query(Conversation).one()
        state = load_conversation_state(db, conversation.id)
        assert state.known_fields["service"] == "GOLDEN_VISA"
        assert state.known_fields["nationality"] == "Indian"
        assert state.locked_service == "GOLDEN_VISA"

    def test_second_message_reuses_conversation(self, db, now):
        process_webhook_payload(db, whatsapp_payload(), now=now)
        process_webhook_payload(db, whatsapp_payload("I am inside UAE", "wamid.in.2"), now=now)

        assert db.query(Conversation).count() == 1
        assert db.query(Lead).count() == 1
        assert db.query(Message).count() == 2

    def test_inbound_rules_reply(self, db, now):
        provider = FakeProvider()
        make_rule(db, name="ask next", actions=[{"type": "SEND_AI_REPLY"}])

        response = process_webhook_payload(db, whatsapp_payload(), provider=provider, now=now)

        assert response.processed == 1
        assert len(provider.calls) == 1
        assert provider.calls[0][0] == "971500000009"
        outbound = db.query(Message).filter(Message.direction == "OUTBOUND").one()
        assert outbound.provider_message_id == "wamid.1"

    def test_failing_event_is_reported(self, db, now, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("contacts table locked")

        monkeypatch.setattr("crm_automation.services.inbound_service.get_or_create_contact", explode)

        response = process_webhook_payload(db, whatsapp_payload(), now=now)

        assert response.success is False
        assert response.failed == 1
        assert db.query(DedupeLedgerEntry).one().status == "FAILED"

    def test_failing_event_alerts(self, db, now, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("contacts table locked")

        monkeypatch.setattr("crm_automation.services.inbound_service.get_or_create_contact", explode)

        with patch("crm_automation.services.inbound_service.alert_error") as alert:
            process_webhook_payload(db, whatsapp_payload(), now=now)

        alert.assert_called_once()
        message, context = alert.call_args[0]
        assert message == "Inbound event failed"
        assert context["channel"] == "whatsapp"
        assert context["error"] == "contacts table locked"

    def test_new_lead_runs_lead_created_rules(self, db, now):
        make_rule(db, name="welcome", trigger="LEAD_CREATED", actions=[{"type": "CREATE_TASK", "title": "Welcome call"}])

        first = process_webhook_payload(db, whatsapp_payload(), now=now)
        process_webhook_payload(db, whatsapp_payload("I am inside UAE", "wamid.in.2"), now=now)

        lead = db.query(Lead).one()
        assert lead.source == "whatsapp"
        task = db.query(Task).one()
        assert task.title == "Welcome call"
        assert task.idempotency_key.endswith(f":lead:{lead.id}")
        assert first.details[0]["rules"][0]["status"] == "success"

    def test_garbage_payload(self, db, now):
        response = process_webhook_payload(db, {"object": "whatsapp_business_account", "entry": "nope"}, now=now)

        assert response.success is True
        assert response.events == 0


class TestReceipts:
    def _outbound(self, db, provider_message_id):
        process_webhook_payload(db, whatsapp_payload(), now=None)
        conversation = db.query(Conversation).one()
        db.add(
            Message(
                conversation_id=conversation.id,
                direction="OUTBOUND",
                channel="whatsapp",
                body="Which service?",
                provider_message_id=provider_message_id,
                status="SENT",
            )
        )
        db.commit()

    def test_delivery_stamps_message(self, db, now):
        self._outbound(db, "wamid.out.1")

        response = process_webhook_payload(db, status_payload("wamid.out.1"), now=now)

        assert response.processed == 1
        message = db.query(Message).filter(Message.provider_message_id == "wamid.out.1").one()
        assert message.delivered_at.replace(tzinfo=timezone.utc).hour == 11
        assert message.read_at is None

    def test_read_stamps_message(self, db, now):
        self._outbound(db, "wamid.out.1")

        process_webhook_payload(db, status_payload("wamid.out.1", "read"), now=now)

        message = db.query(Message).filter(Message.provider_message_id == "wamid.out.1").one()
        assert message.read_at is not None


class TestLeadgen:
    def test_creates_lead_once(self, db, now):
        first = process_webhook_payload(db, leadgen_payload(), now=now)
        second = process_webhook_payload(db, leadgen_payload(), now=now)

        assert first.processed == 1
        assert second.duplicates == 1
        lead = db.query(Lead).one()
        assert lead.external_ref == "LG-1"
        assert lead.source == "meta_leadgen"

    def test_lead_created_rules_run_once(self, db, now):
        make_rule(
            db,
            name="call lead ads lead",
            trigger="LEAD_CREATED",
            conditions={"source_in": ["meta_leadgen"]},
            actions=[{"type": "CREATE_TASK", "title": "Call lead", "priority": "HIGH"}],
        )

        process_webhook_payload(db, leadgen_payload(), now=now)
        process_webhook_payload(db, leadgen_payload(), now=now)

        task = db.query(Task).one()
        assert task.lead_id == db.query(Lead).one().id
        assert task.priority == "HIGH"
        entry = db.query(DedupeLedgerEntry).one()
        assert entry.status == "COMPLETED"
        assert entry.result["rules"][0]["status"] == "success"
