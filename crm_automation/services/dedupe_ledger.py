import hashlib
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from crm_automation.database import dialect_insert
from crm_automation.logging_config import get_logger
from crm_automation.models import DedupeLedgerEntry
from crm_automation.services.clock import utcnow

logger = get_logger("dedupe_ledger")

KIND_INBOUND = "inbound"
KIND_OUTBOUND = "outbound"
KIND_LEADGEN = "leadgen"


def inbound_key(channel: str, provider_message_id: str) -> str:
    return f"inbound:{channel}:{provider_message_id}"


def leadgen_key(leadgen_id: str) -> str:
    return f"leadgen:{leadgen_id}"


def build_inbound_message_id(
    message_id: str | None,
    sender_id: str | None,
    timestamp: datetime | int | None,
    message_text: str | None,
) -> str:
    """Stable id for an inbound event when the provider omitted one."""
    if message_id:
        return message_id.strip()
    if sender_id and timestamp is not None:
        if isinstance(timestamp, datetime):
            timestamp = int(timestamp.timestamp())
        return f"{sender_id}:{timestamp}"
    if sender_id and message_text:
        digest = hashlib.sha256(message_text.encode("utf-8")).hexdigest()[:16]
        return f"{sender_id}:{digest}"
    return str(uuid.uuid4())


def claim(
    db: Session,
    key: str,
    kind: str,
    *,
    status: str = "PROCESSING",
    conversation_id: Optional[int] = None,
) -> Optional[DedupeLedgerEntry]:
    """Insert the ledger row for ``key``. Returns None when it already exists."""
    now = utcnow()
    stmt = (
        dialect_insert(db, DedupeLedgerEntry)
        .values(
            key=key,
            kind=kind,
            status=status,
            conversation_id=conversation_id,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["key"])
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        logger.info("Duplicate ledger key", extra={"context": {"key": key, "kind": kind}})
        return None
    return get(db, key)


def get(db: Session, key: str) -> Optional[DedupeLedgerEntry]:
    return db.query(DedupeLedgerEntry).filter(DedupeLedgerEntry.key == key).first()


def mark(
    db: Session,
    entry: DedupeLedgerEntry,
    status: str,
    error: Optional[str] = None,
    result: Optional[dict[str, Any]] = None,
) -> DedupeLedgerEntry:
    entry.status = status
    entry.error = error
    if result is not None:
        entry.result = result
    entry.updated_at = utcnow()
    db.flush()
    return entry
