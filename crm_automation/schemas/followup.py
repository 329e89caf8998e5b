from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class FollowupScheduleResult(BaseModel):
    created: int
    skipped: int


class QuoteSentRequest(BaseModel):
    quote_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    conversation_id: Optional[int] = None


class NextFollowup(BaseModel):
    task_id: Optional[int] = None
    title: Optional[str] = None
    due_at: Optional[datetime] = None
    cadence_days: Optional[int] = None
    days_until: Optional[int] = None
