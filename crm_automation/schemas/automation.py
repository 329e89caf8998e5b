from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RuleTrigger = Literal["INBOUND_MESSAGE", "STAGE_CHANGE", "EXPIRY_WINDOW", "LEAD_CREATED"]
RuleRunStatus = Literal["success", "skipped", "skipped_cooldown", "error"]


class RuleConditions(BaseModel):
    # stored rules may use camelCase keys
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channels: list[str] = Field(default_factory=list)
    match_stages: list[str] = Field(default_factory=list)
    contains_any: list[str] = Field(default_factory=list)
    source_in: list[str] = Field(default_factory=list)
    only_hot: bool = False
    working_hours_only: bool = False
    cooldown_minutes: int = 0
    cooldown_days: int = 0
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    expiry_type: Optional[str] = None
    days_before: int = 90

    @property
    def cooldown_window_minutes(self) -> int:
        return self.cooldown_minutes + self.cooldown_days * 24 * 60


class RuleAction(BaseModel):
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


class RuleRunResult(BaseModel):
    rule_id: Optional[int] = None
    lead_id: Optional[int] = None
    status: RuleRunStatus
    reason: Optional[str] = None
    actions_executed: int = 0
    errors: list[str] = Field(default_factory=list)


class ScheduledRunSummary(BaseModel):
    rules_run: int
    leads_processed: int
    actions_executed: int
    errors: list[str] = Field(default_factory=list)


class StageChangeRequest(BaseModel):
    stage: str


class StageChangeResponse(BaseModel):
    lead_id: int
    from_stage: str
    to_stage: str
    rule_results: list[RuleRunResult]


class RunRulesRequest(BaseModel):
    trigger: Optional[RuleTrigger] = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)


class RunRulesResponse(BaseModel):
    lead_id: int
    ran_at: datetime
    results: list[RuleRunResult]
