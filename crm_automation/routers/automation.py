from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from crm_automation.config import settings
from crm_automation.database import get_db
from crm_automation.schemas.automation import (
    RunRulesRequest,
    RunRulesResponse,
    ScheduledRunSummary,
    StageChangeRequest,
    StageChangeResponse,
)
from crm_automation.services.clock import utcnow
from crm_automation.services.errors import AutomationError, LeadNotFoundError
from crm_automation.services.messaging_provider import MessagingProvider, get_outbound_provider
from crm_automation.services.rule_engine import change_lead_stage, run_all_rules_for_lead, run_scheduled_rules

router = APIRouter()


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/automation/leads/{lead_id}/run", response_model=RunRulesResponse)
def run_rules_for_lead(
    lead_id: int,
    request: RunRulesRequest,
    db: Session = Depends(get_db),
    provider: Optional[MessagingProvider] = Depends(get_outbound_provider),
):
    """Run active rules for one lead, optionally only those of one trigger."""
    ran_at = utcnow()
    try:
        results = run_all_rules_for_lead(
            db, lead_id, request.trigger, request.trigger_data, now=ran_at, provider=provider
        )
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return RunRulesResponse(lead_id=lead_id, ran_at=ran_at, results=results)


@router.post("/automation/run-scheduled", response_model=ScheduledRunSummary)
def run_scheduled(
    schedule: Optional[str] = None,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    db: Session = Depends(get_db),
    provider: Optional[MessagingProvider] = Depends(get_outbound_provider),
):
    """Cron entry point for expiry-window rules."""
    _require_admin_token(x_admin_token)
    return run_scheduled_rules(db, schedule, provider=provider)


@router.post("/leads/{lead_id}/stage", response_model=StageChangeResponse)
def set_lead_stage(
    lead_id: int,
    request: StageChangeRequest,
    db: Session = Depends(get_db),
    provider: Optional[MessagingProvider] = Depends(get_outbound_provider),
):
    try:
        return change_lead_stage(db, lead_id, request.stage, provider=provider)
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AutomationError as e:
        raise HTTPException(status_code=400, detail=str(e))
