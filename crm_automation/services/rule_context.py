from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from crm_automation.models import Contact, Conversation, ExpiryItem, Lead, Message
from crm_automation.services.clock import utcnow
from crm_automation.services.errors import LeadNotFoundError

RECENT_INBOUND_LIMIT = 5


@dataclass
class RuleContext:
    """Everything a rule evaluation may look at, loaded once per rule run."""

    lead: Lead
    trigger: str
    now: datetime
    trigger_data: dict[str, Any] = field(default_factory=dict)
    conversation: Optional[Conversation] = None
    contact: Optional[Contact] = None
    recent_inbound_text: str = ""
    expiry_item: Optional[ExpiryItem] = None

    @property
    def channel(self) -> Optional[str]:
        if self.trigger_data.get("channel"):
            return self.trigger_data["channel"]
        return self.conversation.channel if self.conversation else None

    @property
    def event_ref(self) -> str:
        """Identifies the triggering event for task idempotency keys."""
        data = self.trigger_data
        if data.get("trigger_message_id"):
            return str(data["trigger_message_id"])
        if data.get("event_ref"):
            return str(data["event_ref"])
        if self.expiry_item is not None:
            return f"expiry:{self.expiry_item.id}:{self.expiry_item.expiry_date:%Y-%m-%d}"
        if data.get("to_stage"):
            return f"stage:{data.get('from_stage')}:{data['to_stage']}"
        return f"day:{self.now:%Y-%m-%d}"


def _pick_conversation(db: Session, lead: Lead, conversation_id: Optional[int]) -> Optional[Conversation]:
    if conversation_id:
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if conversation:
            return conversation
    return (
        db.query(Conversation)
        .filter(Conversation.lead_id == lead.id)
        .order_by(Conversation.last_inbound_at.desc().nullslast(), Conversation.id.desc())
        .first()
    )


def build_rule_context(
    db: Session,
    lead_id: int,
    trigger: str,
    trigger_data: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> RuleContext:
    lead = db.query(Lead).filter(Lead.id == lead_id).first()
    if not lead:
        raise LeadNotFoundError(lead_id)

    trigger_data = dict(trigger_data or {})
    conversation = _pick_conversation(db, lead, trigger_data.get("conversation_id"))
    contact = lead.contact

    recent_text = trigger_data.get("last_message") or ""
    if not recent_text and conversation is not None:
        bodies = (
            db.query(Message.body)
            .filter(Message.conversation_id == conversation.id, Message.direction == "INBOUND")
            .order_by(Message.id.desc())
            .limit(RECENT_INBOUND_LIMIT)
            .all()
        )
        recent_text = "\n".join(body for (body,) in reversed(bodies) if body)

    expiry_item = None
    if trigger_data.get("expiry_item_id"):
        expiry_item = db.query(ExpiryItem).filter(ExpiryItem.id == trigger_data["expiry_item_id"]).first()

    return RuleContext(
        lead=lead,
        trigger=trigger,
        now=now or utcnow(),
        trigger_data=trigger_data,
        conversation=conversation,
        contact=contact,
        recent_inbound_text=recent_text,
        expiry_item=expiry_item,
    )
