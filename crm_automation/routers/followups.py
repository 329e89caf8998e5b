from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from crm_automation.database import get_db
from crm_automation.schemas.followup import FollowupScheduleResult, NextFollowup, QuoteSentRequest
from crm_automation.services.errors import LeadNotFoundError
from crm_automation.services.followup_service import get_next_followup, record_quote_sent

router = APIRouter()


@router.post("/leads/{lead_id}/quote-sent", response_model=FollowupScheduleResult)
def quote_sent(lead_id: int, request: QuoteSentRequest, db: Session = Depends(get_db)):
    """Record a sent quote and schedule its follow-up tasks."""
    try:
        result = record_quote_sent(
            db,
            lead_id,
            quote_id=request.quote_id,
            sent_at=request.sent_at,
            conversation_id=request.conversation_id,
        )
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    db.commit()
    return result


@router.get("/leads/{lead_id}/followups/next", response_model=NextFollowup)
def next_followup(lead_id: int, db: Session = Depends(get_db)):
    try:
        return get_next_followup(db, lead_id)
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
