from app.schemas.lead import LeadMessagesResponse, LeadOut, MessageOut, SendMessageRequest, TakeLeadRequest
from app.schemas.reminder import ReminderRunSummary
from app.schemas.webhook import InboundMessage, WebhookResponse

__all__ = [
    "InboundMessage",
    "WebhookResponse",
    "ReminderRunSummary",
    "LeadOut",
    "MessageOut",
    "TakeLeadRequest",
    "SendMessageRequest",
    "LeadMessagesResponse",
]
