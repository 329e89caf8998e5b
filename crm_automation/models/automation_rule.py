from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.sql import func

from crm_automation.database import Base, JSONType


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)
    trigger = Column(Text, nullable=False)  # INBOUND_MESSAGE, STAGE_CHANGE, EXPIRY_WINDOW, LEAD_CREATED
    conditions = Column(JSONType, nullable=False, default=dict)
    actions = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    schedule = Column(Text)  # hourly, daily
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RuleCooldown(Base):
    __tablename__ = "rule_cooldowns"
    __table_args__ = (UniqueConstraint("rule_id", "lead_id", name="uq_rule_cooldowns_rule_lead"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False)
    last_fired_at = Column(DateTime(timezone=True), nullable=False)


class AutomationRunLog(Base):
    __tablename__ = "automation_run_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id"), nullable=False)
    lead_id = Column(Integer, nullable=False)
    status = Column(Text, nullable=False)
    reason = Column(Text)
    actions_executed = Column(Integer, nullable=False, default=0)
    errors = Column(JSONType, nullable=False, default=list)
    ran_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
