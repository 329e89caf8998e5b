from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from crm_automation.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("contact_id", "channel", name="uq_conversations_contact_channel"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    channel = Column(Text, nullable=False)  # whatsapp, instagram, facebook, email
    status = Column(Text, nullable=False, default="open")  # open, closed
    external_thread_id = Column(Text)  # metadata only, providers reuse or omit it
    qualification_stage = Column(Text, nullable=False, default="NEW")
    known_fields = Column(JSONType, nullable=False, default=dict)
    context = Column(JSONType, nullable=False, default=dict)  # legacy store, may carry knownFields
    questions_asked_count = Column(Integer, nullable=False, default=0)
    locked_service = Column(Text)
    last_question_key = Column(Text)
    last_inbound_at = Column(DateTime(timezone=True))
    last_outbound_at = Column(DateTime(timezone=True))
    state_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    contact = relationship("Contact", back_populates="conversations")
    lead = relationship("Lead", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation", order_by="Message.id")
