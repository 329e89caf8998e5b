from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class _EventBase(BaseModel):
    source_id: Optional[str] = None
    channel: str
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    message_id: Optional[str] = None
    text: Optional[str] = None
    timestamp: Optional[datetime] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class MessageEvent(_EventBase):
    event_type: Literal["message"] = "message"
    external_thread_id: Optional[str] = None


class PostbackEvent(_EventBase):
    event_type: Literal["postback"] = "postback"
    payload: Optional[str] = None


class DeliveryEvent(_EventBase):
    event_type: Literal["delivery"] = "delivery"
    message_ids: list[str] = Field(default_factory=list)
    watermark: Optional[datetime] = None


class ReadEvent(_EventBase):
    event_type: Literal["read"] = "read"
    message_ids: list[str] = Field(default_factory=list)
    watermark: Optional[datetime] = None


class LeadgenEvent(_EventBase):
    event_type: Literal["leadgen"] = "leadgen"
    leadgen_id: str
    form_id: Optional[str] = None
    page_id: Optional[str] = None


NormalizedEvent = Annotated[
    Union[MessageEvent, PostbackEvent, DeliveryEvent, ReadEvent, LeadgenEvent],
    Field(discriminator="event_type"),
]
