from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from crm_automation.database import Base, JSONType


class DedupeLedgerEntry(Base):
    __tablename__ = "dedupe_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(Text, nullable=False, unique=True)
    kind = Column(Text, nullable=False)  # inbound, outbound, leadgen
    status = Column(Text, nullable=False)  # PROCESSING, COMPLETED, FAILED, PENDING, SENT, UNKNOWN
    conversation_id = Column(Integer)
    error = Column(Text)
    result = Column(JSONType)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
