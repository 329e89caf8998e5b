"""At-most-once outbound sends.

The ledger row for a send is inserted and committed before the provider is
called. Whoever inserts it owns the send; everyone else sees a duplicate.
"""

import hashlib
import json
import re
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from crm_automation.logging_config import get_logger
from crm_automation.models import Conversation
from crm_automation.schemas.outbound import OutboundSendRequest, OutboundSendResult
from crm_automation.services import dedupe_ledger
from crm_automation.services.alert_service import alert_warning
from crm_automation.services.clock import utcnow
from crm_automation.services.conversation_service import save_message
from crm_automation.services.messaging_provider import MessagingProvider, ProviderSendResult, get_provider

logger = get_logger("outbound_service")


def normalize_outbound_text(text: Any) -> str:
    """Plain text to send. Unwraps ``{"reply": ...}`` objects and JSON strings of that shape."""
    if text is None:
        return ""
    if isinstance(text, dict):
        return normalize_outbound_text(text.get("reply") or text.get("text") or "")
    text = str(text).strip()
    if text.startswith("{") and text.endswith("}"):
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, dict) and ("reply" in parsed or "text" in parsed):
            return normalize_outbound_text(parsed)
    return text


def content_hash(text: str) -> str:
    normalized = re.sub(r"\s+", " ", text.strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def compute_dedupe_key(
    conversation_id: int,
    reply_type: str,
    trigger_message_id: Optional[str] = None,
    flow_step: Optional[str] = None,
    text: str = "",
    now: Optional[datetime] = None,
) -> str:
    if trigger_message_id:
        return f"outbound:{conversation_id}:{trigger_message_id}:{reply_type}"
    discriminator = flow_step or content_hash(text)[:16]
    day_bucket = (now or utcnow()).strftime("%Y-%m-%d")
    return f"outbound:{conversation_id}:none:{reply_type}:{discriminator}:{day_bucket}"


def _call_provider(provider: MessagingProvider, recipient: str, text: str) -> ProviderSendResult:
    try:
        return provider.send_text(recipient, text)
    except Exception as e:
        logger.error(
            f"Provider raised during send: {e}",
            extra={"context": {"channel": getattr(provider, "channel", None)}},
        )
        return ProviderSendResult(ok=False, error=str(e))


def send_outbound_with_idempotency(
    db: Session,
    request: OutboundSendRequest,
    provider: Optional[MessagingProvider] = None,
    now: Optional[datetime] = None,
) -> OutboundSendResult:
    text = normalize_outbound_text(request.text)
    if not text:
        return OutboundSendResult(success=False, error="Empty message text")

    conversation = db.query(Conversation).filter(Conversation.id == request.conversation_id).first()
    if not conversation:
        return OutboundSendResult(success=False, error=f"Conversation {request.conversation_id} not found")

    key = compute_dedupe_key(
        request.conversation_id,
        request.reply_type,
        trigger_message_id=request.trigger_message_id,
        flow_step=request.flow_step,
        text=text,
        now=now,
    )
    log_context = {"conversation_id": request.conversation_id, "dedupe_key": key, "reply_type": request.reply_type}

    entry = dedupe_ledger.claim(
        db, key, dedupe_ledger.KIND_OUTBOUND, status="PENDING", conversation_id=request.conversation_id
    )
    if entry is None:
        existing = dedupe_ledger.get(db, key)
        previous = (existing.result or {}) if existing else {}
        logger.info("Duplicate outbound blocked", extra={"context": log_context})
        return OutboundSendResult(
            success=False,
            was_duplicate=True,
            message_id=previous.get("provider_message_id"),
            error="Duplicate outbound message blocked by dedupe key",
            dedupe_key=key,
        )
    # claim is committed before the provider call
    db.commit()

    message = save_message(
        db,
        conversation,
        "OUTBOUND",
        text,
        "PENDING",
        dedupe_key=key,
        lead_id=request.lead_id,
    )
    provider = provider or get_provider(request.channel)
    sent = _call_provider(provider, request.recipient, text)
    sent_at = utcnow()

    if sent.ok:
        message.status = "SENT"
        message.provider_message_id = sent.message_id
        message.sent_at = sent_at
        conversation.last_outbound_at = sent_at
        dedupe_ledger.mark(
            db, entry, "SENT", result={"provider_message_id": sent.message_id, "message_row_id": message.id}
        )
        db.commit()
        logger.info("Outbound sent", extra={"context": {**log_context, "provider_message_id": sent.message_id}})
        return OutboundSendResult(success=True, message_id=sent.message_id, dedupe_key=key)

    if sent.timed_out:
        # outcome unknown: the provider may have delivered, so the key stays claimed
        message.error = sent.error
        dedupe_ledger.mark(db, entry, "UNKNOWN", error=sent.error, result={"message_row_id": message.id})
        db.commit()
        alert_warning("Outbound send outcome unknown (provider timeout)", log_context)
        return OutboundSendResult(success=False, error=sent.error, dedupe_key=key)

    message.status = "FAILED"
    message.error = sent.error
    dedupe_ledger.mark(db, entry, "FAILED", error=sent.error, result={"message_row_id": message.id})
    db.commit()
    logger.warning("Outbound send failed", extra={"context": {**log_context, "error": sent.error}})
    return OutboundSendResult(success=False, error=sent.error, dedupe_key=key)
