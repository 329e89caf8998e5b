from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from crm_automation.config import settings
from crm_automation.database import get_db
from crm_automation.logging_config import get_logger
from crm_automation.schemas.webhook import WebhookProcessResponse
from crm_automation.services.inbound_service import process_webhook_payload
from crm_automation.services.messaging_provider import MessagingProvider, get_outbound_provider

logger = get_logger("webhook")

router = APIRouter()


@router.get("/webhooks/meta", response_class=PlainTextResponse)
def verify_subscription(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo the challenge when the token matches."""
    if mode == "subscribe" and settings.meta_verify_token and verify_token == settings.meta_verify_token:
        return challenge or ""
    logger.warning("Webhook verification rejected", extra={"context": {"mode": mode}})
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhooks/meta", response_model=WebhookProcessResponse)
def receive_webhook(
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    provider: Optional[MessagingProvider] = Depends(get_outbound_provider),
):
    """Ingest a Meta webhook delivery. Always 200 so the provider does not retry handled events."""
    result = process_webhook_payload(db, payload, provider=provider)
    logger.info(
        "Webhook processed",
        extra={
            "context": {
                "events": result.events,
                "processed": result.processed,
                "duplicates": result.duplicates,
                "failed": result.failed,
            }
        },
    )
    return result
