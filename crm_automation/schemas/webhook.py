from pydantic import BaseModel, Field


class WebhookProcessResponse(BaseModel):
    success: bool
    events: int = 0
    processed: int = 0
    duplicates: int = 0
    failed: int = 0
    details: list[dict] = Field(default_factory=list)
