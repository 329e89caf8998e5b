from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from crm_automation.database import dialect_insert
from crm_automation.logging_config import get_logger
from crm_automation.models import Contact, Conversation, Lead, Message
from crm_automation.schemas.events import DeliveryEvent, LeadgenEvent, MessageEvent, PostbackEvent, ReadEvent
from crm_automation.schemas.webhook import WebhookProcessResponse
from crm_automation.services import dedupe_ledger
from crm_automation.services.alert_service import alert_error
from crm_automation.services.clock import ensure_utc, utcnow
from crm_automation.services.conversation_service import (
    CONTACT_HANDLE_COLUMNS,
    apply_inbound_text,
    attach_lead,
    get_or_create_contact,
    save_message,
    update_state_with_retry,
    upsert_conversation,
)
from crm_automation.services.event_normalizer import normalize_webhook_event
from crm_automation.services.messaging_provider import MessagingProvider
from crm_automation.services.rule_engine import run_all_rules_for_lead

logger = get_logger("inbound_service")


def _handle_chat_event(
    db: Session,
    event: MessageEvent | PostbackEvent,
    provider: Optional[MessagingProvider],
    now: datetime,
) -> dict[str, Any]:
    if not event.sender_id:
        return {"status": "skipped", "reason": "no sender"}

    text = event.text or ""
    if isinstance(event, PostbackEvent) and not text:
        text = event.payload or ""

    message_id = dedupe_ledger.build_inbound_message_id(event.message_id, event.sender_id, event.timestamp, text)
    key = dedupe_ledger.inbound_key(event.channel, message_id)
    entry = dedupe_ledger.claim(db, key, dedupe_ledger.KIND_INBOUND)
    if entry is None:
        return {"status": "duplicate", "key": key}
    db.commit()

    try:
        contact = get_or_create_contact(db, event.channel, event.sender_id)
        thread_id = event.external_thread_id if isinstance(event, MessageEvent) else None
        conversation = upsert_conversation(db, contact.id, event.channel, external_thread_id=thread_id)
        lead, lead_created = attach_lead(db, conversation, source=event.channel)
        save_message(
            db,
            conversation,
            "INBOUND",
            text,
            "RECEIVED",
            provider_message_id=message_id,
            lead_id=lead.id,
        )
        conversation.last_inbound_at = ensure_utc(event.timestamp) or now
        entry.conversation_id = conversation.id
        lead_id, conversation_id = lead.id, conversation.id
        db.commit()

        state_result = update_state_with_retry(db, conversation_id, lambda state: apply_inbound_text(state, text))
        if not state_result.ok:
            logger.warning(
                "Conversation state not updated",
                extra={"context": {"conversation_id": conversation_id, "error": state_result.error}},
            )
        db.commit()

        rule_results = []
        if lead_created:
            rule_results += run_all_rules_for_lead(
                db,
                lead_id,
                "LEAD_CREATED",
                {"event_ref": f"lead:{lead_id}", "channel": event.channel, "conversation_id": conversation_id},
                now=now,
                provider=provider,
            )
        rule_results += run_all_rules_for_lead(
            db,
            lead_id,
            "INBOUND_MESSAGE",
            {
                "last_message": text,
                "channel": event.channel,
                "trigger_message_id": message_id,
                "conversation_id": conversation_id,
            },
            now=now,
            provider=provider,
        )
        summary = {
            "lead_id": lead_id,
            "conversation_id": conversation_id,
            "rules": [result.model_dump() for result in rule_results],
        }
        dedupe_ledger.mark(db, entry, "COMPLETED", result=summary)
        db.commit()
        return {"status": "processed", "key": key, **summary}
    except Exception as e:
        db.rollback()
        logger.error(f"Inbound event failed: {e}", exc_info=True, extra={"context": {"key": key}})
        alert_error("Inbound event failed", {"key": key, "channel": event.channel, "error": str(e)})
        failed = dedupe_ledger.get(db, key)
        if failed is not None:
            dedupe_ledger.mark(db, failed, "FAILED", error=str(e))
            db.commit()
        return {"status": "failed", "key": key, "error": str(e)}


def _find_conversation_for_sender(db: Session, channel: str, sender_id: Optional[str]) -> Optional[Conversation]:
    column_name = CONTACT_HANDLE_COLUMNS.get(channel)
    if not column_name or not sender_id:
        return None
    contact = db.query(Contact).filter(getattr(Contact, column_name) == sender_id).first()
    if not contact:
        return None
    return (
        db.query(Conversation)
        .filter(Conversation.contact_id == contact.id, Conversation.channel == channel)
        .first()
    )


def _handle_receipt(db: Session, event: DeliveryEvent | ReadEvent, now: datetime) -> dict[str, Any]:
    column = Message.delivered_at if isinstance(event, DeliveryEvent) else Message.read_at
    stamp = ensure_utc(event.timestamp or event.watermark) or now

    query = db.query(Message).filter(Message.direction == "OUTBOUND", column.is_(None))
    if event.message_ids:
        query = query.filter(Message.provider_message_id.in_(event.message_ids))
    elif event.watermark is not None:
        # Messenger read receipts only carry a watermark
        conversation = _find_conversation_for_sender(db, event.channel, event.sender_id)
        if conversation is None:
            return {"status": "skipped", "reason": "unknown conversation"}
        query = query.filter(Message.conversation_id == conversation.id, Message.sent_at <= ensure_utc(event.watermark))
    else:
        return {"status": "skipped", "reason": "no message reference"}

    updated = query.update({column: stamp}, synchronize_session=False)
    db.commit()
    return {"status": "processed", "event_type": event.event_type, "updated": updated}


def _handle_leadgen(
    db: Session, event: LeadgenEvent, provider: Optional[MessagingProvider], now: datetime
) -> dict[str, Any]:
    key = dedupe_ledger.leadgen_key(event.leadgen_id)
    entry = dedupe_ledger.claim(db, key, dedupe_ledger.KIND_LEADGEN)
    if entry is None:
        return {"status": "duplicate", "key": key}

    stmt = (
        dialect_insert(db, Lead)
        .values(
            stage="NEW",
            priority="NORMAL",
            autopilot_enabled=True,
            source="meta_leadgen",
            external_ref=event.leadgen_id,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["external_ref"])
    )
    inserted = db.execute(stmt).rowcount > 0
    lead_id = db.query(Lead.id).filter(Lead.external_ref == event.leadgen_id).scalar()
    db.commit()
    logger.info(
        "Lead ads lead received",
        extra={"context": {"lead_id": lead_id, "leadgen_id": event.leadgen_id, "created": inserted}},
    )

    rule_results = []
    if inserted:
        rule_results = run_all_rules_for_lead(
            db,
            lead_id,
            "LEAD_CREATED",
            {"event_ref": key, "source": "meta_leadgen", "form_id": event.form_id},
            now=now,
            provider=provider,
        )

    entry = dedupe_ledger.get(db, key)
    dedupe_ledger.mark(
        db,
        entry,
        "COMPLETED",
        result={
            "lead_id": lead_id,
            "form_id": event.form_id,
            "page_id": event.page_id,
            "rules": [result.model_dump() for result in rule_results],
        },
    )
    db.commit()
    return {"status": "processed", "key": key, "lead_id": lead_id}


def process_webhook_payload(
    db: Session,
    payload: Any,
    provider: Optional[MessagingProvider] = None,
    now: Optional[datetime] = None,
) -> WebhookProcessResponse:
    """Normalize a webhook delivery and run every event through the pipeline, each in isolation."""
    now = ensure_utc(now) if now else utcnow()
    events = normalize_webhook_event(payload)
    response = WebhookProcessResponse(success=True, events=len(events))

    for event in events:
        try:
            if isinstance(event, (MessageEvent, PostbackEvent)):
                outcome = _handle_chat_event(db, event, provider, now)
            elif isinstance(event, (DeliveryEvent, ReadEvent)):
                outcome = _handle_receipt(db, event, now)
            else:
                outcome = _handle_leadgen(db, event, provider, now)
        except Exception as e:
            db.rollback()
            logger.error(
                f"Webhook event failed: {e}",
                exc_info=True,
                extra={"context": {"event_type": event.event_type, "channel": event.channel}},
            )
            outcome = {"status": "failed", "error": str(e)}

        outcome.setdefault("event_type", event.event_type)
        response.details.append(outcome)
        if outcome["status"] == "processed":
            response.processed += 1
        elif outcome["status"] == "duplicate":
            response.duplicates += 1
        elif outcome["status"] == "failed":
            response.failed += 1

    response.success = response.failed == 0
    return response
