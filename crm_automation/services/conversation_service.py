from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from crm_automation.config import settings
from crm_automation.database import dialect_insert
from crm_automation.logging_config import get_logger
from crm_automation.models import Contact, Conversation, Lead, Message
from crm_automation.schemas.conversation import ConversationStateResponse
from crm_automation.services.clock import utcnow
from crm_automation.services.errors import ConversationNotFoundError
from crm_automation.services.field_extractors import BUSINESS_SETUP_SERVICES, RENEWAL_SERVICES, extract_fields
from crm_automation.services.result import Result
from crm_automation.services.state_machine import SETTLED_STAGES, QualificationStage, can_transition, close, quote

logger = get_logger("conversation_service")

CONTACT_HANDLE_COLUMNS = {
    "whatsapp": "phone",
    "instagram": "instagram_id",
    "facebook": "facebook_psid",
}

DEFAULT_REQUIRED_FIELDS = ("service", "nationality", "location")
BUSINESS_SETUP_REQUIRED_FIELDS = ("service", "business_activity", "license_type", "partners_count", "visas_count")
RENEWAL_REQUIRED_FIELDS = ("service", "expiry_date")

QUESTIONS = {
    "service": "Which service can we help you with? (e.g. family visa, golden visa, business setup)",
    "nationality": "May I know your nationality?",
    "location": "Are you currently inside the UAE or outside?",
    "business_activity": "What business activity are you planning?",
    "license_type": "Would you prefer a mainland or a freezone license?",
    "partners_count": "How many partners or shareholders will the company have?",
    "visas_count": "How many visas will you need with the license?",
    "expiry_date": "What is the exact expiry date of your current visa or Emirates ID?",
}


@dataclass
class ConversationState:
    conversation_id: int
    stage: QualificationStage = QualificationStage.NEW
    known_fields: dict[str, Any] = field(default_factory=dict)
    questions_asked_count: int = 0
    locked_service: Optional[str] = None
    last_question_key: Optional[str] = None
    state_version: int = 0


# --- persistence -----------------------------------------------------------


def get_or_create_contact(db: Session, channel: str, handle: str, full_name: Optional[str] = None) -> Contact:
    """Find the contact owning a channel handle or create one. Safe under concurrent inserts."""
    if channel not in CONTACT_HANDLE_COLUMNS:
        contact = db.query(Contact).filter(Contact.email == handle).first()
        if not contact:
            contact = Contact(email=handle, full_name=full_name, created_at=utcnow())
            db.add(contact)
            db.flush()
        return contact

    column_name = CONTACT_HANDLE_COLUMNS[channel]
    column = getattr(Contact, column_name)
    stmt = (
        dialect_insert(db, Contact)
        .values(**{column_name: handle}, full_name=full_name, created_at=utcnow())
        .on_conflict_do_nothing(index_elements=[column_name])
    )
    db.execute(stmt)
    return db.query(Contact).populate_existing().filter(column == handle).one()


def _live_lead_of_contact(db: Session, contact_id: int) -> Optional[Lead]:
    return (
        db.query(Lead)
        .filter(Lead.contact_id == contact_id, Lead.deleted_at.is_(None))
        .order_by(Lead.created_at.desc(), Lead.id.desc())
        .first()
    )


def attach_lead(db: Session, conversation: Conversation, source: Optional[str] = None) -> tuple[Lead, bool]:
    """Lead of the conversation, linking or creating one when it has none. Returns (lead, created).

    The link is a conditional UPDATE on the lead_id the caller saw. When a
    concurrent handler linked first, its lead is adopted and the one created
    here is discarded before commit.
    """
    seen_lead_id = conversation.lead_id
    if seen_lead_id:
        lead = db.get(Lead, seen_lead_id)
        if lead is not None and lead.deleted_at is None:
            return lead, False

    candidate = _live_lead_of_contact(db, conversation.contact_id)
    created = candidate is None
    if created:
        now = utcnow()
        candidate = Lead(contact_id=conversation.contact_id, stage="NEW", source=source, created_at=now, updated_at=now)
        db.add(candidate)
        db.flush()

    link_filter = Conversation.lead_id.is_(None) if seen_lead_id is None else Conversation.lead_id == seen_lead_id
    linked = (
        db.query(Conversation)
        .filter(Conversation.id == conversation.id, link_filter)
        .update({Conversation.lead_id: candidate.id}, synchronize_session=False)
    )
    db.refresh(conversation)
    if linked:
        return candidate, created

    logger.info(
        "Conversation linked to a lead concurrently",
        extra={"context": {"conversation_id": conversation.id, "lead_id": conversation.lead_id}},
    )
    if created:
        db.delete(candidate)
        db.flush()
    return db.get(Lead, conversation.lead_id), False


def upsert_conversation(
    db: Session,
    contact_id: int,
    channel: str,
    lead_id: Optional[int] = None,
    external_thread_id: Optional[str] = None,
) -> Conversation:
    """The one conversation for (contact, channel). Reopens it when closed."""
    stmt = (
        dialect_insert(db, Conversation)
        .values(
            contact_id=contact_id,
            channel=channel,
            lead_id=lead_id,
            status="open",
            external_thread_id=external_thread_id,
            qualification_stage=QualificationStage.NEW.value,
            known_fields={},
            context={},
            questions_asked_count=0,
            state_version=0,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["contact_id", "channel"])
    )
    db.execute(stmt)

    conversation = (
        db.query(Conversation)
        .populate_existing()
        .filter(Conversation.contact_id == contact_id, Conversation.channel == channel)
        .one()
    )
    if conversation.status != "open":
        conversation.status = "open"
    if lead_id and not conversation.lead_id:
        conversation.lead_id = lead_id
    if external_thread_id and conversation.external_thread_id != external_thread_id:
        conversation.external_thread_id = external_thread_id
    db.flush()
    return conversation


def save_message(
    db: Session,
    conversation: Conversation,
    direction: str,
    body: str,
    status: str,
    *,
    provider_message_id: Optional[str] = None,
    dedupe_key: Optional[str] = None,
    lead_id: Optional[int] = None,
) -> Message:
    message = Message(
        conversation_id=conversation.id,
        lead_id=lead_id or conversation.lead_id,
        direction=direction,
        channel=conversation.channel,
        body=body or "",
        status=status,
        provider_message_id=provider_message_id,
        dedupe_key=dedupe_key,
        created_at=utcnow(),
    )
    db.add(message)
    db.flush()
    return message


def _merged_known_fields(conversation: Conversation) -> dict[str, Any]:
    context = conversation.context if isinstance(conversation.context, dict) else {}
    legacy: dict[str, Any] = {}
    for key in ("knownFields", "known_fields"):
        value = context.get(key)
        if isinstance(value, dict):
            legacy.update(value)
    structured = conversation.known_fields if isinstance(conversation.known_fields, dict) else {}
    return {**legacy, **structured}


def _state_from_row(conversation: Conversation) -> ConversationState:
    try:
        stage = QualificationStage(conversation.qualification_stage or QualificationStage.NEW.value)
    except ValueError:
        logger.warning(
            "Unknown qualification stage, treating as NEW",
            extra={"context": {"conversation_id": conversation.id, "stage": conversation.qualification_stage}},
        )
        stage = QualificationStage.NEW
    return ConversationState(
        conversation_id=conversation.id,
        stage=stage,
        known_fields=_merged_known_fields(conversation),
        questions_asked_count=conversation.questions_asked_count or 0,
        locked_service=conversation.locked_service,
        last_question_key=conversation.last_question_key,
        state_version=conversation.state_version or 0,
    )


def load_conversation_state(db: Session, conversation_id: int) -> ConversationState:
    conversation = db.query(Conversation).populate_existing().filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise ConversationNotFoundError(conversation_id)
    return _state_from_row(conversation)


def compare_and_swap(
    db: Session,
    conversation_id: int,
    expected_version: int,
    mutation: Callable[[ConversationState], ConversationState],
) -> Result[ConversationState]:
    """Apply ``mutation`` only if the stored version still equals ``expected_version``.

    The write is a single conditional UPDATE; a concurrent writer that got there
    first makes it match zero rows and the caller gets a ``conflict`` result.
    No retry happens here.
    """
    try:
        current = load_conversation_state(db, conversation_id)
    except ConversationNotFoundError:
        return Result.not_found(conversation_id)

    if current.state_version != expected_version:
        return Result.conflict(
            conversation_id, f"Version mismatch: expected {expected_version}, found {current.state_version}"
        )

    new_state = mutation(current)
    new_version = expected_version + 1
    updated = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.state_version == expected_version)
        .update(
            {
                Conversation.qualification_stage: new_state.stage.value,
                Conversation.known_fields: dict(new_state.known_fields),
                Conversation.questions_asked_count: new_state.questions_asked_count,
                Conversation.locked_service: new_state.locked_service,
                Conversation.last_question_key: new_state.last_question_key,
                Conversation.state_version: new_version,
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        return Result.conflict(conversation_id)

    db.flush()
    return Result.success(replace(new_state, state_version=new_version))


def update_state_with_retry(
    db: Session,
    conversation_id: int,
    mutation: Callable[[ConversationState], ConversationState],
    max_attempts: Optional[int] = None,
) -> Result[ConversationState]:
    """Reload and re-apply ``mutation`` on version conflicts, a bounded number of times."""
    attempts = max_attempts or settings.state_update_max_attempts
    result: Result[ConversationState] = Result.conflict(conversation_id, "No attempt made")
    for attempt in range(1, attempts + 1):
        try:
            state = load_conversation_state(db, conversation_id)
        except ConversationNotFoundError:
            return Result.not_found(conversation_id)

        result = compare_and_swap(db, conversation_id, state.state_version, mutation)
        if not result.is_conflict:
            return result
        logger.info(
            "State update conflict, retrying",
            extra={"context": {"conversation_id": conversation_id, "attempt": attempt}},
        )
    logger.warning(
        "State update gave up after conflicts",
        extra={"context": {"conversation_id": conversation_id, "attempts": attempts}},
    )
    return result


def to_response(state: ConversationState) -> ConversationStateResponse:
    return ConversationStateResponse(
        conversation_id=state.conversation_id,
        stage=state.stage.value,
        known_fields=state.known_fields,
        questions_asked_count=state.questions_asked_count,
        locked_service=state.locked_service,
        last_question_key=state.last_question_key,
        state_version=state.state_version,
    )


# --- pure transitions ------------------------------------------------------


def required_fields(service: Optional[str]) -> tuple[str, ...]:
    if service in BUSINESS_SETUP_SERVICES:
        return BUSINESS_SETUP_REQUIRED_FIELDS
    if service in RENEWAL_SERVICES:
        return RENEWAL_REQUIRED_FIELDS
    return DEFAULT_REQUIRED_FIELDS


def missing_fields(state: ConversationState) -> list[str]:
    service = state.locked_service or state.known_fields.get("service")
    return [key for key in required_fields(service) if not state.known_fields.get(key)]


def _advance(current: QualificationStage, target: QualificationStage) -> QualificationStage:
    if current == target or not can_transition(current, target):
        return current
    return target


def _settle_if_complete(state: ConversationState, max_questions: Optional[int] = None) -> ConversationState:
    cap = max_questions or settings.max_qualification_questions
    if state.stage in SETTLED_STAGES:
        return state
    if not missing_fields(state) or state.questions_asked_count >= cap:
        return replace(state, stage=_advance(state.stage, QualificationStage.READY_FOR_QUOTE))
    return state


def lock_service(state: ConversationState, service_key: str, customer_requested_change: bool = False) -> ConversationState:
    """Set the locked service once. A different key only replaces it on explicit customer request."""
    if not service_key:
        return state
    if state.locked_service is None:
        known = dict(state.known_fields)
        known.setdefault("service", service_key)
        return replace(state, locked_service=service_key, known_fields=known)
    if state.locked_service == service_key or not customer_requested_change:
        return state
    known = {**state.known_fields, "service": service_key}
    return replace(state, locked_service=service_key, known_fields=known)


def apply_inbound_text(state: ConversationState, text: str, max_questions: Optional[int] = None) -> ConversationState:
    """Fold fields found in ``text`` into the state. First value for a field wins."""
    extracted = extract_fields(text or "")
    learned = {key: value for key, value in extracted.items() if not state.known_fields.get(key)}
    if not learned:
        return _settle_if_complete(state, max_questions)

    new_state = replace(state, known_fields={**state.known_fields, **learned})
    service = new_state.known_fields.get("service")
    if service:
        new_state = lock_service(new_state, service)
    if new_state.stage not in SETTLED_STAGES:
        new_state = replace(new_state, stage=_advance(new_state.stage, QualificationStage.FIELD_COLLECTED))
    return _settle_if_complete(new_state, max_questions)


def next_question(state: ConversationState, max_questions: Optional[int] = None) -> Optional[str]:
    """Key of the next field to ask for, or None when nothing should be asked."""
    cap = max_questions or settings.max_qualification_questions
    if state.stage in SETTLED_STAGES or state.stage == QualificationStage.READY_FOR_QUOTE:
        return None
    if state.questions_asked_count >= cap:
        return None
    missing = missing_fields(state)
    return missing[0] if missing else None


def record_question_asked(state: ConversationState, question_key: str, max_questions: Optional[int] = None) -> ConversationState:
    new_state = replace(
        state,
        questions_asked_count=state.questions_asked_count + 1,
        last_question_key=question_key,
        stage=_advance(state.stage, QualificationStage.ASKING),
    )
    return _settle_if_complete(new_state, max_questions)


def requalify(state: ConversationState) -> ConversationState:
    """Back to ASKING with a fresh question budget. Known fields and the locked service stay."""
    return replace(state, stage=QualificationStage.ASKING, questions_asked_count=0, last_question_key=None)


def mark_quoted(state: ConversationState) -> ConversationState:
    return replace(state, stage=quote(state.stage))


def mark_closed(state: ConversationState) -> ConversationState:
    return replace(state, stage=close(state.stage), last_question_key=None)
