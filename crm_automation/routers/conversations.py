from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from crm_automation.database import get_db
from crm_automation.models import Conversation
from crm_automation.schemas.conversation import ConversationStateResponse
from crm_automation.schemas.outbound import ManualReplyRequest, OutboundSendRequest, OutboundSendResult
from crm_automation.services.conversation_service import CONTACT_HANDLE_COLUMNS, load_conversation_state, to_response
from crm_automation.services.errors import ConversationNotFoundError
from crm_automation.services.messaging_provider import MessagingProvider, get_outbound_provider
from crm_automation.services.outbound_service import send_outbound_with_idempotency

router = APIRouter()


@router.get("/conversations/{conversation_id}/state", response_model=ConversationStateResponse)
def get_state(conversation_id: int, db: Session = Depends(get_db)):
    try:
        return to_response(load_conversation_state(db, conversation_id))
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/conversations/{conversation_id}/reply", response_model=OutboundSendResult)
def send_reply(
    conversation_id: int,
    request: ManualReplyRequest,
    db: Session = Depends(get_db),
    provider: Optional[MessagingProvider] = Depends(get_outbound_provider),
):
    """Agent reply through the idempotent dispatcher."""
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")

    contact = conversation.contact
    recipient = getattr(contact, CONTACT_HANDLE_COLUMNS.get(conversation.channel, "email"), None) if contact else None
    if not recipient:
        raise HTTPException(status_code=400, detail="Contact has no handle for this channel")

    result = send_outbound_with_idempotency(
        db,
        OutboundSendRequest(
            conversation_id=conversation.id,
            lead_id=conversation.lead_id,
            channel=conversation.channel,
            recipient=recipient,
            text=request.text,
            reply_type=request.reply_type,
        ),
        provider=provider,
    )
    if result.was_duplicate:
        raise HTTPException(status_code=409, detail=result.error)
    return result
