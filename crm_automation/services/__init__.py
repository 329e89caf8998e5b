from crm_automation.services.conversation_service import (
    ConversationState,
    apply_inbound_text,
    compare_and_swap,
    load_conversation_state,
    lock_service,
    upsert_conversation,
)
from crm_automation.services.event_normalizer import normalize_webhook_event
from crm_automation.services.followup_service import schedule_followups
from crm_automation.services.outbound_service import send_outbound_with_idempotency
from crm_automation.services.rule_engine import run_all_rules_for_lead, run_rule_on_lead
from crm_automation.services.state_machine import (
    InvalidTransitionError,
    QualificationStage,
    can_transition,
    transition,
)
