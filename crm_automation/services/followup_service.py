import math
import re
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from crm_automation.config import settings
from crm_automation.database import dialect_insert
from crm_automation.logging_config import get_logger
from crm_automation.models import TERMINAL_LEAD_STAGES, Conversation, Lead, Task
from crm_automation.schemas.followup import FollowupScheduleResult, NextFollowup
from crm_automation.services.clock import ensure_utc, utcnow
from crm_automation.services.conversation_service import mark_quoted, update_state_with_retry
from crm_automation.services.errors import LeadNotFoundError

logger = get_logger("followup_service")

CADENCE_DAYS = (3, 5, 7, 9, 12)
TITLE_PREFIX = "Quote follow-up D+"
_CADENCE_IN_TITLE = re.compile(r"D\+(\d+)")


def followup_key(lead_id: int, business_event_id: Optional[str], cadence_days: int) -> str:
    return f"quote_followup:{lead_id}:{business_event_id or 'none'}:{cadence_days}"


def followup_priority(cadence_days: int) -> str:
    if cadence_days == 3:
        return "HIGH"
    if cadence_days == 5:
        return "NORMAL"
    return "LOW"


def followup_due_at(occurred_at: datetime, cadence_days: int, due_hour: Optional[int] = None) -> datetime:
    due = ensure_utc(occurred_at) + timedelta(days=cadence_days)
    if due_hour is not None:
        due = due.replace(hour=due_hour)
    return due.replace(minute=0, second=0, microsecond=0)


def schedule_followups(
    db: Session,
    lead_id: int,
    business_event_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    conversation_id: Optional[int] = None,
) -> FollowupScheduleResult:
    """Create the D+3..D+12 follow-up tasks for a sent quote, once per (lead, quote, cadence)."""
    lead = db.query(Lead).filter(Lead.id == lead_id).first()
    if not lead:
        raise LeadNotFoundError(lead_id)

    if lead.stage in TERMINAL_LEAD_STAGES or lead.deleted_at is not None:
        logger.info(
            "Lead closed, no follow-ups scheduled",
            extra={"context": {"lead_id": lead_id, "stage": lead.stage}},
        )
        return FollowupScheduleResult(created=0, skipped=len(CADENCE_DAYS))

    occurred_at = ensure_utc(occurred_at) if occurred_at else utcnow()
    created = 0
    skipped = 0
    for cadence_days in CADENCE_DAYS:
        key = followup_key(lead_id, business_event_id, cadence_days)
        if db.query(Task.id).filter(Task.idempotency_key == key).first():
            skipped += 1
            continue

        stmt = (
            dialect_insert(db, Task)
            .values(
                lead_id=lead_id,
                conversation_id=conversation_id,
                title=f"{TITLE_PREFIX}{cadence_days}",
                type="FOLLOW_UP",
                due_at=followup_due_at(occurred_at, cadence_days, settings.followup_due_hour),
                status="OPEN",
                priority=followup_priority(cadence_days),
                idempotency_key=key,
                ai_suggested=False,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
        )
        if db.execute(stmt).rowcount > 0:
            created += 1
        else:
            # lost the race to a concurrent scheduler
            skipped += 1

    db.flush()
    logger.info(
        "Quote follow-ups scheduled",
        extra={"context": {"lead_id": lead_id, "quote_id": business_event_id, "created": created, "skipped": skipped}},
    )
    return FollowupScheduleResult(created=created, skipped=skipped)


def record_quote_sent(
    db: Session,
    lead_id: int,
    quote_id: Optional[str] = None,
    sent_at: Optional[datetime] = None,
    conversation_id: Optional[int] = None,
) -> FollowupScheduleResult:
    """Quote-sent business event: conversation goes to QUOTED, follow-ups get scheduled."""
    if conversation_id is None:
        conversation = (
            db.query(Conversation).filter(Conversation.lead_id == lead_id).order_by(Conversation.id.desc()).first()
        )
        conversation_id = conversation.id if conversation else None

    if conversation_id is not None:
        result = update_state_with_retry(db, conversation_id, mark_quoted)
        if not result.ok:
            logger.warning(
                "Could not mark conversation quoted",
                extra={"context": {"conversation_id": conversation_id, "error": result.error}},
            )

    return schedule_followups(db, lead_id, quote_id, sent_at, conversation_id)


def get_next_followup(db: Session, lead_id: int, now: Optional[datetime] = None) -> NextFollowup:
    if not db.query(Lead.id).filter(Lead.id == lead_id).first():
        raise LeadNotFoundError(lead_id)

    task = (
        db.query(Task)
        .filter(
            Task.lead_id == lead_id,
            Task.type == "FOLLOW_UP",
            Task.status == "OPEN",
            Task.title.startswith(TITLE_PREFIX),
        )
        .order_by(Task.due_at.asc())
        .first()
    )
    if not task:
        return NextFollowup()

    now = ensure_utc(now) if now else utcnow()
    due_at = ensure_utc(task.due_at) or now
    days_until = math.ceil((due_at - now).total_seconds() / 86400)
    match = _CADENCE_IN_TITLE.search(task.title)
    return NextFollowup(
        task_id=task.id,
        title=task.title,
        due_at=due_at,
        cadence_days=int(match.group(1)) if match else 0,
        days_until=max(days_until, 0),
    )
