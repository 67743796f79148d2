from spin_agent.models.contact import Contact
from spin_agent.models.conversation import Conversation
from spin_agent.models.message import Message
from spin_agent.models.organization import Organization
from spin_agent.models.prompt import Prompt
from spin_agent.models.scheduled_batch import ScheduledBatch
from spin_agent.models.whatsapp_account import WhatsAppAccount

__all__ = [
    "Organization",
    "WhatsAppAccount",
    "Contact",
    "Conversation",
    "Message",
    "Prompt",
    "ScheduledBatch",
]
