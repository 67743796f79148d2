from spin_agent.services.conversation_service import (
    get_conversation,
    get_or_create_contact,
    get_or_create_conversation,
)
from spin_agent.services.message_service import (
    get_recent_messages,
    save_message,
)
from spin_agent.services.state_machine import (
    InvalidTransitionError,
    SpinStage,
    can_transition,
    compute_score,
    is_qualified,
    next_stage,
    transition,
)
