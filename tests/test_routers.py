from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import make_lead, make_rule
from crm_automation.database import get_db
from crm_automation.main import app
from crm_automation.models import Message, Task
from crm_automation.services.messaging_provider import get_outbound_provider


@pytest.fixture
def client(db, provider):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_outbound_provider] = lambda: provider
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestWebhookVerify:
    @patch("crm_automation.routers.webhook.settings.meta_verify_token", "secret")
    def test_echoes_challenge(self, client):
        response = client.get(
            "/webhooks/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "secret", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

    @patch("crm_automation.routers.webhook.settings.meta_verify_token", "secret")
    def test_rejects_wrong_token(self, client):
        response = client.get(
            "/webhooks/meta",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )
        assert response.status_code == 403


class TestWebhookReceive:
    def test_message_is_processed(self, client, db):
        payload = {
            "object": "instagram",
            "entry": [
                {
                    "id": "IG-PAGE",
                    "time": 1735725600000,
                    "messaging": [
                        {
                            "sender": {"id": "IGSID-1"},
                            "recipient": {"id": "IG-PAGE"},
                            "timestamp": 1735725600000,
                            "message": {"mid": "m_1", "text": "price for family visa?"},
                        }
                    ],
                }
            ],
        }

        first = client.post("/webhooks/meta", json=payload)
        second = client.post("/webhooks/meta", json=payload)

        assert first.status_code == 200
        assert first.json()["processed"] == 1
        assert second.json()["duplicates"] == 1
        assert db.query(Message).count() == 1

    def test_non_object_body(self, client):
        response = client.post("/webhooks/meta", json=["not", "an", "object"])

        assert response.status_code == 200
        assert response.json()["events"] == 0


class TestAutomationEndpoints:
    @patch("crm_automation.routers.automation.settings.admin_token", "admin-secret")
    def test_scheduled_requires_token(self, client):
        assert client.post("/automation/run-scheduled").status_code == 401
        assert client.post("/automation/run-scheduled", headers={"X-Admin-Token": "bad"}).status_code == 401

    @patch("crm_automation.routers.automation.settings.admin_token", "admin-secret")
    def test_scheduled_runs(self, client):
        response = client.post("/automation/run-scheduled", headers={"X-Admin-Token": "admin-secret"})

        assert response.status_code == 200
        assert response.json()["rules_run"] == 0

    @patch("crm_automation.routers.automation.settings.admin_token", None)
    def test_scheduled_unconfigured(self, client):
        response = client.post("/automation/run-scheduled", headers={"X-Admin-Token": "anything"})
        assert response.status_code == 500

    def test_run_rules_for_lead(self, client, db):
        _, lead, _ = make_lead(db)
        make_rule(db, actions=[{"type": "SET_PRIORITY", "priority": "URGENT"}])

        response = client.post(f"/automation/leads/{lead.id}/run", json={"trigger": "INBOUND_MESSAGE"})

        assert response.status_code == 200
        assert response.json()["results"][0]["status"] == "success"

    def test_run_rules_unknown_lead(self, client):
        assert client.post("/automation/leads/404/run", json={}).status_code == 404

    def test_stage_change(self, client, db):
        _, lead, _ = make_lead(db)

        response = client.post(f"/leads/{lead.id}/stage", json={"stage": "contacted"})

        assert response.status_code == 200
        assert response.json()["to_stage"] == "CONTACTED"

    def test_stage_change_unknown_stage(self, client, db):
        _, lead, _ = make_lead(db)

        assert client.post(f"/leads/{lead.id}/stage", json={"stage": "FLYING"}).status_code == 400


class TestFollowupEndpoints:
    def test_quote_sent_schedules(self, client, db):
        _, lead, _ = make_lead(db)

        response = client.post(f"/leads/{lead.id}/quote-sent", json={"quote_id": "Q-9"})
        again = client.post(f"/leads/{lead.id}/quote-sent", json={"quote_id": "Q-9"})

        assert response.json() == {"created": 5, "skipped": 0}
        assert again.json() == {"created": 0, "skipped": 5}
        assert db.query(Task).count() == 5

        upcoming = client.get(f"/leads/{lead.id}/followups/next")
        assert upcoming.json()["cadence_days"] == 3

    def test_quote_sent_unknown_lead(self, client):
        assert client.post("/leads/404/quote-sent", json={}).status_code == 404


class TestConversationEndpoints:
    def test_state(self, client, db):
        _, _, conversation = make_lead(db)

        response = client.get(f"/conversations/{conversation.id}/state")

        assert response.status_code == 200
        assert response.json()["stage"] == "NEW"

    def test_state_not_found(self, client):
        assert client.get("/conversations/404/state").status_code == 404

    def test_manual_reply_and_duplicate(self, client, db, provider):
        _, _, conversation = make_lead(db)

        first = client.post(f"/conversations/{conversation.id}/reply", json={"text": "Hello from the team"})
        second = client.post(f"/conversations/{conversation.id}/reply", json={"text": "Hello from the team"})

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert second.status_code == 409
        assert len(provider.calls) == 1
