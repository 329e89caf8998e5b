from typing import Any, Literal, Optional

from pydantic import BaseModel

ReplyType = Literal["greeting", "question", "answer", "closing", "manual", "followup", "reminder", "test"]


class OutboundSendRequest(BaseModel):
    conversation_id: int
    lead_id: Optional[int] = None
    channel: str
    recipient: str
    text: Any
    reply_type: ReplyType = "answer"
    trigger_message_id: Optional[str] = None
    flow_step: Optional[str] = None


class OutboundSendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    was_duplicate: bool = False
    error: Optional[str] = None
    dedupe_key: Optional[str] = None


class ManualReplyRequest(BaseModel):
    text: str
    reply_type: ReplyType = "manual"
