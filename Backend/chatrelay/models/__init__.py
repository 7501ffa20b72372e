from chatrelay.models.base import Base
from chatrelay.models.messaging_session import MessagingSession
from chatrelay.models.webhook_log import WebhookLog

__all__ = [
    "Base",
    "MessagingSession",
    "WebhookLog",
]
