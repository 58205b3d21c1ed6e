from enum import Enum


class ChatMode(str, Enum):
    AI = "ai"
    HUMAN = "human"


# human -> ai is owned by the dashboard, there is no automatic path back.
VALID_TRANSITIONS = {
    ChatMode.AI: [ChatMode.HUMAN],
    ChatMode.HUMAN: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_mode: ChatMode, to_mode: ChatMode):
        self.from_mode = from_mode
        self.to_mode = to_mode
        super().__init__(f"Invalid transition: {from_mode.value} -> {to_mode.value}")


def can_transition(from_mode: ChatMode, to_mode: ChatMode) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_mode, [])
    return to_mode in allowed


def transition(from_mode: ChatMode, to_mode: ChatMode) -> ChatMode:
    """Perform mode transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_mode, to_mode):
        raise InvalidTransitionError(from_mode, to_mode)
    return to_mode


def hand_off(current_mode: ChatMode) -> ChatMode:
    """Hand the chat over to a human."""
    return transition(current_mode, ChatMode.HUMAN)
