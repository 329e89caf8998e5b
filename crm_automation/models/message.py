from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from crm_automation.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    direction = Column(Text, nullable=False)  # INBOUND, OUTBOUND
    channel = Column(Text, nullable=False)
    body = Column(Text, nullable=False, default="")
    provider_message_id = Column(Text, index=True)
    status = Column(Text, nullable=False)  # PENDING, SENT, FAILED, RECEIVED
    dedupe_key = Column(Text)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
    lead = relationship("Lead", back_populates="messages")
