from crm_automation.models.automation_rule import AutomationRule, AutomationRunLog, RuleCooldown
from crm_automation.models.contact import Contact
from crm_automation.models.conversation import Conversation
from crm_automation.models.dedupe_ledger import DedupeLedgerEntry
from crm_automation.models.lead import LEAD_PRIORITIES, LEAD_STAGES, TERMINAL_LEAD_STAGES, ExpiryItem, Lead
from crm_automation.models.message import Message
from crm_automation.models.task import Task

__all__ = [
    "Contact",
    "Lead",
    "ExpiryItem",
    "Conversation",
    "Message",
    "Task",
    "AutomationRule",
    "RuleCooldown",
    "AutomationRunLog",
    "DedupeLedgerEntry",
    "LEAD_STAGES",
    "TERMINAL_LEAD_STAGES",
    "LEAD_PRIORITIES",
]
