from wabridge.services.chat_resolver import (
    find_chat_by_address,
    find_chat_by_stable_phone,
    resolve_chat,
)
from wabridge.services.state_machine import (
    ChatMode,
    InvalidTransitionError,
    can_transition,
    hand_off,
    transition,
)
