class AutomationError(Exception):
    """Base class for failures that abort a single core operation."""


class LeadNotFoundError(AutomationError):
    def __init__(self, lead_id: int):
        self.lead_id = lead_id
        super().__init__(f"Lead {lead_id} not found")


class ConversationNotFoundError(AutomationError):
    def __init__(self, conversation_id: int):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")
