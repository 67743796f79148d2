from spin_agent.schemas.batch import BatchOutcomeResponse, BatchProcessRequest
from spin_agent.schemas.session import MessageView, RedeliverResponse, SessionView
from spin_agent.schemas.webhook import WebhookEvent, WebhookResponse

__all__ = [
    "WebhookEvent",
    "WebhookResponse",
    "BatchProcessRequest",
    "BatchOutcomeResponse",
    "SessionView",
    "MessageView",
    "RedeliverResponse",
]
