import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import crm_automation.models  # noqa: E402,F401
from crm_automation.database import Base  # noqa: E402
from crm_automation.models import AutomationRule, Contact, Conversation, Lead  # noqa: E402
from crm_automation.services.messaging_provider import MessagingProvider, ProviderSendResult  # noqa: E402


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def db():
    """In-memory SQLite session with every table created."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


class FakeProvider(MessagingProvider):
    """Records sends and answers with a canned result."""

    channel = "whatsapp"

    def __init__(self, result: ProviderSendResult | None = None):
        self.calls = []
        self.result = result

    def send_text(self, recipient: str, text: str) -> ProviderSendResult:
        self.calls.append((recipient, text))
        if self.result is not None:
            return self.result
        return ProviderSendResult(ok=True, message_id=f"wamid.{len(self.calls)}")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def now():
    return datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


def make_lead(db, phone="971500000001", stage="NEW", **kwargs) -> tuple[Contact, Lead, Conversation]:
    contact = Contact(phone=phone, full_name=kwargs.pop("full_name", "Test Customer"))
    db.add(contact)
    db.flush()
    lead = Lead(contact_id=contact.id, stage=stage, **kwargs)
    db.add(lead)
    db.flush()
    conversation = Conversation(contact_id=contact.id, lead_id=lead.id, channel="whatsapp", known_fields={}, context={})
    db.add(conversation)
    db.commit()
    return contact, lead, conversation


def make_rule(db, name="rule", trigger="INBOUND_MESSAGE", conditions=None, actions=None, **kwargs) -> AutomationRule:
    rule = AutomationRule(
        name=name,
        trigger=trigger,
        conditions=conditions or {},
        actions=actions or [],
        **kwargs,
    )
    db.add(rule)
    db.commit()
    return rule
