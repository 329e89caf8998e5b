from enum import Enum


class QualificationStage(str, Enum):
    NEW = "NEW"
    ASKING = "ASKING"
    FIELD_COLLECTED = "FIELD_COLLECTED"
    READY_FOR_QUOTE = "READY_FOR_QUOTE"
    QUOTED = "QUOTED"
    DONE = "DONE"


VALID_TRANSITIONS = {
    QualificationStage.NEW: [
        QualificationStage.ASKING,
        QualificationStage.FIELD_COLLECTED,
        QualificationStage.READY_FOR_QUOTE,
        QualificationStage.QUOTED,
        QualificationStage.DONE,
    ],
    QualificationStage.ASKING: [
        QualificationStage.ASKING,
        QualificationStage.FIELD_COLLECTED,
        QualificationStage.READY_FOR_QUOTE,
        QualificationStage.QUOTED,
        QualificationStage.DONE,
    ],
    QualificationStage.FIELD_COLLECTED: [
        QualificationStage.FIELD_COLLECTED,
        QualificationStage.ASKING,
        QualificationStage.READY_FOR_QUOTE,
        QualificationStage.QUOTED,
        QualificationStage.DONE,
    ],
    QualificationStage.READY_FOR_QUOTE: [QualificationStage.QUOTED, QualificationStage.ASKING, QualificationStage.DONE],
    QualificationStage.QUOTED: [QualificationStage.DONE, QualificationStage.ASKING],
    QualificationStage.DONE: [QualificationStage.ASKING, QualificationStage.QUOTED],
}

# inbound text never moves a conversation out of these
SETTLED_STAGES = {QualificationStage.QUOTED, QualificationStage.DONE}


class InvalidTransitionError(Exception):
    def __init__(self, from_stage: QualificationStage, to_stage: QualificationStage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid transition: {from_stage.value} -> {to_stage.value}")


def can_transition(from_stage: QualificationStage, to_stage: QualificationStage) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_stage, [])
    return to_stage in allowed


def transition(from_stage: QualificationStage, to_stage: QualificationStage) -> QualificationStage:
    """Perform stage transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(from_stage, to_stage)
    return to_stage


def quote(current: QualificationStage) -> QualificationStage:
    """Quote sent. Every stage may be quoted; re-quoting is a no-op."""
    if current == QualificationStage.QUOTED:
        return current
    return transition(current, QualificationStage.QUOTED)


def close(current: QualificationStage) -> QualificationStage:
    """Lead won or lost. Any stage may close; closing twice is a no-op."""
    if current == QualificationStage.DONE:
        return current
    return transition(current, QualificationStage.DONE)
