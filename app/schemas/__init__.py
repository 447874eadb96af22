from app.schemas.events import DispatchOutcome, DispatchResult, InboundEvent, QueuedEvent, TriggerType
from app.schemas.webhook import InstagramWebhookPayload, WebhookAcceptedResponse

__all__ = [
    "DispatchOutcome",
    "DispatchResult",
    "InboundEvent",
    "QueuedEvent",
    "TriggerType",
    "InstagramWebhookPayload",
    "WebhookAcceptedResponse",
]
