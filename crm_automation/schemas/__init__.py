from crm_automation.schemas.automation import RuleRunResult
from crm_automation.schemas.events import NormalizedEvent
from crm_automation.schemas.followup import FollowupScheduleResult
from crm_automation.schemas.outbound import OutboundSendRequest, OutboundSendResult

__all__ = [
    "NormalizedEvent",
    "OutboundSendRequest",
    "OutboundSendResult",
    "RuleRunResult",
    "FollowupScheduleResult",
]
