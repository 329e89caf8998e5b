"""Side effects a rule can ask for.

Each handler returns True when it changed something and False when the
effect had already happened (duplicate key). Failures raise ActionError or a
storage exception; the rule engine collects them and moves on.
"""

from collections import defaultdict
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from crm_automation.database import dialect_insert
from crm_automation.logging_config import get_logger
from crm_automation.models import LEAD_PRIORITIES, LEAD_STAGES, AutomationRule, Task
from crm_automation.schemas.automation import RuleAction
from crm_automation.schemas.outbound import OutboundSendRequest
from crm_automation.services.conversation_service import (
    CONTACT_HANDLE_COLUMNS,
    QUESTIONS,
    load_conversation_state,
    next_question,
    record_question_asked,
    requalify,
    update_state_with_retry,
    upsert_conversation,
)
from crm_automation.services.messaging_provider import MessagingProvider
from crm_automation.services.outbound_service import send_outbound_with_idempotency
from crm_automation.services.rule_context import RuleContext

logger = get_logger("automation_actions")

CLOSING_REPLY = "Thank you! We have everything we need and our team will send your quote shortly."

CHANNEL_ACTIONS = {"SEND_WHATSAPP": "whatsapp", "SEND_EMAIL": "email"}


class ActionError(Exception):
    pass


def parse_action(raw: Any) -> RuleAction:
    """Accept ``{"type": ..., "params": {...}}`` or flat ``{"type": ..., "title": ...}``."""
    if isinstance(raw, RuleAction):
        return raw
    if not isinstance(raw, dict) or not raw.get("type"):
        raise ActionError(f"Malformed action: {raw!r}")
    if isinstance(raw.get("params"), dict):
        return RuleAction(type=str(raw["type"]).upper(), params=raw["params"])
    params = {key: value for key, value in raw.items() if key != "type"}
    return RuleAction(type=str(raw["type"]).upper(), params=params)


def task_key(rule_id: int, lead_id: int, event_ref: str) -> str:
    return f"rule_task:{rule_id}:{lead_id}:{event_ref}"


def _recipient(context: RuleContext) -> Optional[str]:
    contact = context.contact
    channel = context.channel
    if contact is None or channel is None:
        return None
    column = CONTACT_HANDLE_COLUMNS.get(channel, "email")
    return getattr(contact, column, None)


def _render(template: str, context: RuleContext) -> str:
    values: dict[str, Any] = defaultdict(str)
    if context.conversation is not None and isinstance(context.conversation.known_fields, dict):
        values.update(context.conversation.known_fields)
    if context.contact is not None and context.contact.full_name:
        values["name"] = context.contact.full_name
    if context.expiry_item is not None:
        values["expiry_type"] = context.expiry_item.type
        values["expiry_date"] = f"{context.expiry_item.expiry_date:%d %b %Y}"
    values["stage"] = context.lead.stage
    return template.format_map(values)


def send_ai_reply(
    db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, provider: Optional[MessagingProvider] = None
) -> bool:
    conversation = context.conversation
    if conversation is None:
        raise ActionError("No conversation for lead")
    recipient = _recipient(context)
    if not recipient:
        raise ActionError(f"No recipient handle for channel {context.channel}")

    params = action.params
    question_key = None
    if params.get("template"):
        text = _render(str(params["template"]), context)
        reply_type = params.get("reply_type", "answer")
    else:
        state = load_conversation_state(db, conversation.id)
        question_key = next_question(state)
        if question_key:
            text = QUESTIONS[question_key]
            reply_type = "question"
        else:
            text = CLOSING_REPLY
            reply_type = "closing"

    result = send_outbound_with_idempotency(
        db,
        OutboundSendRequest(
            conversation_id=conversation.id,
            lead_id=context.lead.id,
            channel=conversation.channel,
            recipient=recipient,
            text=text,
            reply_type=reply_type,
            trigger_message_id=context.trigger_data.get("trigger_message_id"),
            flow_step=question_key or f"rule:{rule.id}",
        ),
        provider=provider,
        now=context.now,
    )
    if result.was_duplicate:
        return False
    if not result.success:
        raise ActionError(result.error or "Send failed")

    if question_key:
        update_state_with_retry(db, conversation.id, lambda s: record_question_asked(s, question_key))
    return True


def send_channel_message(
    db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, provider: Optional[MessagingProvider] = None
) -> bool:
    """SEND_WHATSAPP and SEND_EMAIL: a templated message on a fixed channel, once per rule and event."""
    channel = CHANNEL_ACTIONS[action.type]
    contact = context.contact
    recipient = getattr(contact, CONTACT_HANDLE_COLUMNS.get(channel, "email"), None) if contact else None
    if not recipient:
        raise ActionError(f"Contact has no {channel} handle")
    template = action.params.get("message") or action.params.get("template")
    if not template:
        raise ActionError(f"{action.type} needs a message or template")

    conversation = upsert_conversation(db, contact.id, channel, lead_id=context.lead.id)
    result = send_outbound_with_idempotency(
        db,
        OutboundSendRequest(
            conversation_id=conversation.id,
            lead_id=context.lead.id,
            channel=channel,
            recipient=recipient,
            text=_render(str(template), context),
            reply_type=action.params.get("reply_type", "followup"),
            trigger_message_id=f"rule:{rule.id}:{context.event_ref}",
        ),
        provider=provider,
        now=context.now,
    )
    if result.was_duplicate:
        return False
    if not result.success:
        raise ActionError(result.error or "Send failed")
    return True


def create_task(db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, **_) -> bool:
    params = action.params
    days = int(params.get("days_from_now", params.get("daysFromNow", 0)) or 0)
    priority = str(params.get("priority", "NORMAL")).upper()
    if priority not in LEAD_PRIORITIES:
        raise ActionError(f"Unknown priority {priority}")

    title = str(params.get("title") or rule.name)
    if "{" in title:
        title = _render(title, context)

    stmt = (
        dialect_insert(db, Task)
        .values(
            lead_id=context.lead.id,
            conversation_id=context.conversation.id if context.conversation else None,
            title=title,
            type=str(params.get("task_type", params.get("taskType", "OTHER"))),
            due_at=context.now + timedelta(days=days),
            status="OPEN",
            priority=priority,
            idempotency_key=task_key(rule.id, context.lead.id, context.event_ref),
            ai_suggested=False,
            created_at=context.now,
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
    )
    return db.execute(stmt).rowcount > 0


def requalify_lead(db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, **_) -> bool:
    if context.conversation is None:
        raise ActionError("No conversation to requalify")
    result = update_state_with_retry(db, context.conversation.id, requalify)
    if not result.ok:
        raise ActionError(result.error or "Requalify failed")
    return True


def set_next_followup(db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, **_) -> bool:
    params = action.params
    days = int(params.get("days", params.get("daysFromNow", 0)) or 0)
    hours = int(params.get("hours", 0) or 0)
    if days <= 0 and hours <= 0:
        raise ActionError("SET_NEXT_FOLLOWUP needs a positive days or hours offset")
    context.lead.next_follow_up_at = context.now + timedelta(days=days, hours=hours)
    db.flush()
    return True


def assign_to_user(db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, **_) -> bool:
    user_id = action.params.get("user_id", action.params.get("userId"))
    if user_id in (None, ""):
        raise ActionError("ASSIGN_TO_USER needs a user_id")
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise ActionError(f"Invalid user_id {user_id!r}")
    if context.lead.assigned_user_id == user_id:
        return False
    context.lead.assigned_user_id = user_id
    db.flush()
    return True


def set_priority(db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, **_) -> bool:
    priority = str(action.params.get("priority", "")).upper()
    if priority not in LEAD_PRIORITIES:
        raise ActionError(f"Unknown priority {priority!r}")
    if context.lead.priority == priority:
        return False
    context.lead.priority = priority
    db.flush()
    return True


def update_stage(db: Session, action: RuleAction, context: RuleContext, rule: AutomationRule, **_) -> bool:
    """Sets the lead stage directly. Does not fire STAGE_CHANGE rules."""
    stage = str(action.params.get("stage", "")).upper()
    if stage not in LEAD_STAGES:
        raise ActionError(f"Unknown stage {stage!r}")
    if context.lead.stage == stage:
        return False
    context.lead.stage = stage
    db.flush()
    return True


ACTION_HANDLERS: dict[str, Callable[..., bool]] = {
    "SEND_AI_REPLY": send_ai_reply,
    "SEND_WHATSAPP": send_channel_message,
    "SEND_EMAIL": send_channel_message,
    "ASSIGN_TO_USER": assign_to_user,
    "CREATE_TASK": create_task,
    "REQUALIFY_LEAD": requalify_lead,
    "SET_NEXT_FOLLOWUP": set_next_followup,
    "SET_PRIORITY": set_priority,
    "UPDATE_STAGE": update_stage,
}


def execute_action(
    db: Session,
    action: RuleAction,
    context: RuleContext,
    rule: AutomationRule,
    provider: Optional[MessagingProvider] = None,
) -> bool:
    handler = ACTION_HANDLERS.get(action.type)
    if handler is None:
        raise ActionError(f"Unknown action type {action.type}")
    return handler(db, action, context, rule, provider=provider)
