from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from crm_automation.database import Base


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    title = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="FOLLOW_UP")
    due_at = Column(DateTime(timezone=True))
    status = Column(Text, nullable=False, default="OPEN")  # OPEN, DONE, SNOOZED
    priority = Column(Text, nullable=False, default="NORMAL")
    idempotency_key = Column(Text, unique=True)
    ai_suggested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lead = relationship("Lead", back_populates="tasks")
