"""Automation rule evaluation.

Order of a single run: guards, cooldown read, conditions, cooldown claim,
actions. The cooldown is only written once every condition passed, so a rule
that does not match never burns the lead's cooldown window.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo

import yaml
from pydantic import ValidationError
from sqlalchemy.orm import Session

from crm_automation.config import settings
from crm_automation.database import dialect_insert
from crm_automation.logging_config import LoggerAdapter, get_logger
from crm_automation.models import (
    LEAD_STAGES,
    TERMINAL_LEAD_STAGES,
    AutomationRule,
    AutomationRunLog,
    Conversation,
    ExpiryItem,
    Lead,
    RuleCooldown,
)
from crm_automation.schemas.automation import (
    RuleConditions,
    RuleRunResult,
    ScheduledRunSummary,
    StageChangeResponse,
)
from crm_automation.services.automation_actions import execute_action, parse_action
from crm_automation.services.clock import ensure_utc, utcnow
from crm_automation.services.conversation_service import mark_closed, update_state_with_retry
from crm_automation.services.errors import AutomationError, LeadNotFoundError
from crm_automation.services.messaging_provider import MessagingProvider
from crm_automation.services.rule_context import RuleContext, build_rule_context

logger = get_logger("rule_engine")

EXPIRY_WINDOW_SLACK_DAYS = 2
WORKING_HOURS = (9, 18)
WORKING_DAYS = (0, 1, 2, 3, 4)


# --- cooldown --------------------------------------------------------------


def is_cooldown_active(last_fired_at: Optional[datetime], cooldown_minutes: int, now: datetime) -> bool:
    if not last_fired_at or cooldown_minutes <= 0:
        return False
    return ensure_utc(now) - ensure_utc(last_fired_at) < timedelta(minutes=cooldown_minutes)


def get_last_fired_at(db: Session, rule_id: int, lead_id: int) -> Optional[datetime]:
    row = (
        db.query(RuleCooldown)
        .populate_existing()
        .filter(RuleCooldown.rule_id == rule_id, RuleCooldown.lead_id == lead_id)
        .first()
    )
    return ensure_utc(row.last_fired_at) if row else None


def claim_cooldown(db: Session, rule_id: int, lead_id: int, cooldown_minutes: int, now: datetime) -> bool:
    """Atomically record a fire. False when another run fired inside the window first."""
    stmt = dialect_insert(db, RuleCooldown).values(rule_id=rule_id, lead_id=lead_id, last_fired_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=["rule_id", "lead_id"],
        set_={"last_fired_at": stmt.excluded.last_fired_at},
        where=RuleCooldown.last_fired_at <= now - timedelta(minutes=max(cooldown_minutes, 0)),
    )
    return db.execute(stmt).rowcount > 0


# --- conditions ------------------------------------------------------------


def parse_conditions(raw: Any) -> RuleConditions:
    return RuleConditions.model_validate(raw or {})


def is_within_working_hours(now: datetime, tz_name: Optional[str] = None) -> bool:
    local = ensure_utc(now).astimezone(ZoneInfo(tz_name or settings.business_timezone))
    start, end = WORKING_HOURS
    return local.weekday() in WORKING_DAYS and start <= local.hour < end


def _days_until(expiry: datetime, now: datetime) -> int:
    return (ensure_utc(expiry).date() - ensure_utc(now).date()).days


def _matching_expiry(context: RuleContext, conditions: RuleConditions) -> Optional[ExpiryItem]:
    if context.expiry_item is not None:
        candidates = [context.expiry_item]
    else:
        candidates = list(context.lead.expiry_items)
    for item in candidates:
        if conditions.expiry_type and item.type != conditions.expiry_type:
            continue
        if abs(_days_until(item.expiry_date, context.now) - conditions.days_before) <= EXPIRY_WINDOW_SLACK_DAYS:
            return item
    return None


def check_conditions(conditions: RuleConditions, context: RuleContext) -> Optional[str]:
    """Reason the rule does not apply, or None when every condition holds."""
    if conditions.channels:
        channel = (context.channel or "").lower()
        if channel not in {c.lower() for c in conditions.channels}:
            return f"channel {channel or 'unknown'} not in {conditions.channels}"

    if conditions.match_stages and context.lead.stage not in conditions.match_stages:
        return f"stage {context.lead.stage} not matched"

    if conditions.contains_any:
        text = (context.recent_inbound_text or "").lower()
        if not any(keyword.lower() in text for keyword in conditions.contains_any):
            return "no keyword matched"

    if conditions.source_in and (context.lead.source or "") not in conditions.source_in:
        return f"source {context.lead.source} not in {conditions.source_in}"

    if conditions.only_hot and (context.lead.ai_score or 0) < settings.hot_lead_score_threshold:
        return "lead is not hot"

    if conditions.working_hours_only and not is_within_working_hours(context.now):
        return "outside working hours"

    if context.trigger == "STAGE_CHANGE":
        if conditions.from_stage and context.trigger_data.get("from_stage") != conditions.from_stage:
            return "from_stage mismatch"
        if conditions.to_stage and context.trigger_data.get("to_stage") != conditions.to_stage:
            return "to_stage mismatch"

    if context.trigger == "EXPIRY_WINDOW":
        item = _matching_expiry(context, conditions)
        if item is None:
            return "no expiry in window"
        context.expiry_item = item

    return None


# --- running ---------------------------------------------------------------


def _log_run(db: Session, rule: AutomationRule, lead_id: int, result: RuleRunResult, now: datetime) -> None:
    db.add(
        AutomationRunLog(
            rule_id=rule.id,
            lead_id=lead_id,
            status=result.status,
            reason=result.reason,
            actions_executed=result.actions_executed,
            errors=list(result.errors),
            ran_at=now,
        )
    )
    db.flush()


def run_rule_on_lead(
    db: Session,
    rule: AutomationRule,
    context: RuleContext,
    now: Optional[datetime] = None,
    provider: Optional[MessagingProvider] = None,
) -> RuleRunResult:
    now = ensure_utc(now or context.now)
    context.now = now
    lead = context.lead
    log = LoggerAdapter(logger, {"rule_id": rule.id, "lead_id": lead.id, "trigger": context.trigger})

    def finish(status: str, reason: Optional[str] = None, executed: int = 0, errors: Optional[list] = None):
        result = RuleRunResult(
            rule_id=rule.id,
            lead_id=lead.id,
            status=status,
            reason=reason,
            actions_executed=executed,
            errors=errors or [],
        )
        _log_run(db, rule, lead.id, result, now)
        return result

    if not rule.is_active:
        return finish("skipped", "rule inactive")
    if rule.trigger != context.trigger:
        return finish("skipped", f"trigger {context.trigger} does not match {rule.trigger}")
    if lead.deleted_at is not None:
        return finish("skipped", "lead deleted")
    if not lead.autopilot_enabled:
        return finish("skipped", "autopilot disabled")

    try:
        conditions = parse_conditions(rule.conditions)
    except ValidationError as e:
        log.warning("Invalid rule conditions", context={"error": str(e)})
        return finish("error", "invalid conditions", errors=[str(e)])

    window = conditions.cooldown_window_minutes
    if is_cooldown_active(get_last_fired_at(db, rule.id, lead.id), window, now):
        log.info("Rule in cooldown")
        return finish("skipped_cooldown", "cooldown active")

    reason = check_conditions(conditions, context)
    if reason:
        return finish("skipped", reason)

    if window > 0 and not claim_cooldown(db, rule.id, lead.id, window, now):
        log.info("Lost cooldown race")
        return finish("skipped_cooldown", "cooldown claimed concurrently")

    executed = 0
    errors: list[str] = []
    for index, raw_action in enumerate(rule.actions or []):
        action_type = raw_action.get("type") if isinstance(raw_action, dict) else str(raw_action)
        try:
            action = parse_action(raw_action)
            if execute_action(db, action, context, rule, provider=provider):
                executed += 1
        except Exception as e:
            errors.append(f"{action_type}: {e}")
            log.warning("Action failed", context={"action_index": index, "action": action_type, "error": str(e)})

    status = "error" if errors and executed == 0 else "success"
    log.info("Rule ran", context={"status": status, "actions_executed": executed, "errors": len(errors)})
    return finish(status, executed=executed, errors=errors)


def _active_rules(db: Session, trigger: Optional[str] = None) -> list[AutomationRule]:
    query = db.query(AutomationRule).filter(AutomationRule.is_active.is_(True))
    if trigger:
        query = query.filter(AutomationRule.trigger == trigger)
    return query.order_by(AutomationRule.id).all()


def _record_failure(db: Session, rule: AutomationRule, lead_id: int, error: str, now: datetime) -> RuleRunResult:
    result = RuleRunResult(rule_id=rule.id, lead_id=lead_id, status="error", reason="rule run failed", errors=[error])
    try:
        _log_run(db, rule, lead_id, result, now)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Could not record failed rule run: {e}", extra={"context": {"rule_id": rule.id, "lead_id": lead_id}})
    return result


def _run_isolated(
    db: Session,
    rule: AutomationRule,
    lead_id: int,
    trigger: str,
    trigger_data: dict,
    now: datetime,
    provider: Optional[MessagingProvider],
) -> RuleRunResult:
    rule_id = rule.id
    try:
        context = build_rule_context(db, lead_id, trigger, trigger_data, now)
        result = run_rule_on_lead(db, rule, context, now=now, provider=provider)
        db.commit()
        return result
    except Exception as e:
        db.rollback()
        logger.error(
            f"Rule run failed: {e}",
            exc_info=True,
            extra={"context": {"rule_id": rule_id, "lead_id": lead_id, "trigger": trigger}},
        )
        return _record_failure(db, rule, lead_id, str(e), now)


def run_all_rules_for_lead(
    db: Session,
    lead_id: int,
    trigger: Optional[str] = None,
    trigger_data: Optional[dict] = None,
    now: Optional[datetime] = None,
    provider: Optional[MessagingProvider] = None,
) -> list[RuleRunResult]:
    """Run every active rule (of ``trigger``, when given) for one lead. One failing rule never stops the rest."""
    now = ensure_utc(now) if now else utcnow()
    if not db.query(Lead.id).filter(Lead.id == lead_id).first():
        raise LeadNotFoundError(lead_id)

    results = []
    for rule in _active_rules(db, trigger):
        results.append(_run_isolated(db, rule, lead_id, rule.trigger, trigger_data or {}, now, provider))
    return results


def _expiry_candidates(db: Session, conditions: RuleConditions, now: datetime) -> list[ExpiryItem]:
    target = ensure_utc(now) + timedelta(days=conditions.days_before)
    start = (target - timedelta(days=EXPIRY_WINDOW_SLACK_DAYS)).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=2 * EXPIRY_WINDOW_SLACK_DAYS + 1)
    query = (
        db.query(ExpiryItem)
        .join(Lead, Lead.id == ExpiryItem.lead_id)
        .filter(
            Lead.deleted_at.is_(None),
            ExpiryItem.expiry_date >= start,
            ExpiryItem.expiry_date < end,
        )
    )
    if conditions.expiry_type:
        query = query.filter(ExpiryItem.type == conditions.expiry_type)
    return query.order_by(ExpiryItem.expiry_date, ExpiryItem.id).all()


def run_scheduled_rules(
    db: Session,
    schedule: Optional[str] = None,
    now: Optional[datetime] = None,
    provider: Optional[MessagingProvider] = None,
) -> ScheduledRunSummary:
    """Cron entry point: EXPIRY_WINDOW rules over leads whose expiry falls in the rule's window."""
    now = ensure_utc(now) if now else utcnow()
    rules = [r for r in _active_rules(db, "EXPIRY_WINDOW") if not schedule or not r.schedule or r.schedule == schedule]

    leads_seen: set[int] = set()
    executed = 0
    errors: list[str] = []
    for rule in rules:
        try:
            conditions = parse_conditions(rule.conditions)
        except ValidationError as e:
            errors.append(f"rule {rule.id}: invalid conditions")
            logger.warning("Skipping rule with invalid conditions", extra={"context": {"rule_id": rule.id, "error": str(e)}})
            continue

        for item in _expiry_candidates(db, conditions, now):
            lead_id, item_id = item.lead_id, item.id
            leads_seen.add(lead_id)
            trigger_data = {"expiry_item_id": item_id, "expiry_type": item.type}
            result = _run_isolated(db, rule, lead_id, "EXPIRY_WINDOW", trigger_data, now, provider)
            executed += result.actions_executed
            errors.extend(f"rule {result.rule_id} lead {lead_id}: {error}" for error in result.errors)

    logger.info(
        "Scheduled rules finished",
        extra={"context": {"schedule": schedule, "rules": len(rules), "leads": len(leads_seen), "actions": executed}},
    )
    return ScheduledRunSummary(
        rules_run=len(rules),
        leads_processed=len(leads_seen),
        actions_executed=executed,
        errors=errors,
    )


def _close_conversations(db: Session, lead_id: int) -> None:
    """Won or lost leads stop qualifying: every conversation of the lead goes to DONE."""
    conversation_ids = [row.id for row in db.query(Conversation.id).filter(Conversation.lead_id == lead_id)]
    for conversation_id in conversation_ids:
        result = update_state_with_retry(db, conversation_id, mark_closed)
        if not result.ok:
            logger.warning(
                "Conversation not closed",
                extra={"context": {"conversation_id": conversation_id, "error": result.error}},
            )
    db.commit()


def change_lead_stage(
    db: Session,
    lead_id: int,
    to_stage: str,
    now: Optional[datetime] = None,
    provider: Optional[MessagingProvider] = None,
) -> StageChangeResponse:
    to_stage = (to_stage or "").upper()
    if to_stage not in LEAD_STAGES:
        raise AutomationError(f"Unknown lead stage {to_stage!r}")

    lead = db.query(Lead).filter(Lead.id == lead_id).first()
    if not lead:
        raise LeadNotFoundError(lead_id)

    from_stage = lead.stage
    if from_stage == to_stage:
        return StageChangeResponse(lead_id=lead_id, from_stage=from_stage, to_stage=to_stage, rule_results=[])

    changed_at = utcnow()
    lead.stage = to_stage
    lead.updated_at = changed_at
    db.commit()
    logger.info("Lead stage changed", extra={"context": {"lead_id": lead_id, "from": from_stage, "to": to_stage}})

    if to_stage in TERMINAL_LEAD_STAGES:
        _close_conversations(db, lead_id)

    # a lead can re-enter the same stage; each change is its own event
    event_ref = f"stage:{from_stage}:{to_stage}:{changed_at.isoformat()}"
    results = run_all_rules_for_lead(
        db,
        lead_id,
        "STAGE_CHANGE",
        {"from_stage": from_stage, "to_stage": to_stage, "event_ref": event_ref},
        now=now,
        provider=provider,
    )
    return StageChangeResponse(lead_id=lead_id, from_stage=from_stage, to_stage=to_stage, rule_results=results)


def load_rules_from_yaml(db: Session, path: str | Path) -> int:
    """Create or update rules by name from a YAML file with a top-level ``rules`` list."""
    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    entries = data.get("rules", []) if isinstance(data, dict) else []
    count = 0
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("trigger"):
            logger.warning("Skipping malformed rule entry", extra={"context": {"entry": entry}})
            continue
        conditions = parse_conditions(entry.get("conditions")).model_dump(exclude_defaults=True)
        actions = [parse_action(raw).model_dump() for raw in entry.get("actions") or []]

        rule = db.query(AutomationRule).filter(AutomationRule.name == entry["name"]).first()
        if not rule:
            rule = AutomationRule(name=entry["name"], created_at=utcnow())
            db.add(rule)
        rule.trigger = str(entry["trigger"]).upper()
        rule.conditions = conditions
        rule.actions = actions
        rule.is_active = bool(entry.get("is_active", True))
        rule.schedule = entry.get("schedule")
        count += 1

    db.flush()
    return count
