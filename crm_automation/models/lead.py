from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from crm_automation.database import Base

LEAD_STAGES = (
    "NEW",
    "CONTACTED",
    "ENGAGED",
    "QUALIFIED",
    "PROPOSAL_SENT",
    "IN_PROGRESS",
    "ON_HOLD",
    "COMPLETED_WON",
    "LOST",
)
TERMINAL_LEAD_STAGES = ("COMPLETED_WON", "LOST")
LEAD_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=True)
    stage = Column(Text, nullable=False, default="NEW")  # see LeadStage
    assigned_user_id = Column(Integer)
    service_type = Column(Text)
    priority = Column(Text, nullable=False, default="NORMAL")  # LOW, NORMAL, HIGH, URGENT
    ai_score = Column(Integer)
    next_follow_up_at = Column(DateTime(timezone=True))
    autopilot_enabled = Column(Boolean, nullable=False, default=True)
    source = Column(Text)
    external_ref = Column(Text, unique=True)  # lead-ads leadgen id
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    contact = relationship("Contact", back_populates="leads")
    conversations = relationship("Conversation", back_populates="lead")
    messages = relationship("Message", back_populates="lead")
    tasks = relationship("Task", back_populates="lead")
    expiry_items = relationship("ExpiryItem", back_populates="lead", order_by="ExpiryItem.expiry_date")


class ExpiryItem(Base):
    __tablename__ = "expiry_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False)
    type = Column(Text, nullable=False)  # VISA_EXPIRY, EMIRATES_ID_EXPIRY, PASSPORT_EXPIRY, ...
    expiry_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lead = relationship("Lead", back_populates="expiry_items")
