from typing import Any, Optional

from pydantic import BaseModel


class ConversationStateResponse(BaseModel):
    conversation_id: int
    stage: str
    known_fields: dict[str, Any]
    questions_asked_count: int
    locked_service: Optional[str] = None
    last_question_key: Optional[str] = None
    state_version: int
