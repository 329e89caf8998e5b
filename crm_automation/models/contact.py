from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from crm_automation.database import Base


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(Text)
    phone = Column(Text, unique=True)  # whatsapp handle
    email = Column(Text)
    instagram_id = Column(Text, unique=True)
    facebook_psid = Column(Text, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    leads = relationship("Lead", back_populates="contact")
    conversations = relationship("Conversation", back_populates="contact")
