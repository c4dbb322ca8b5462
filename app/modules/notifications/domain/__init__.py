from .telegram import NotificationEvent, TelegramNotifier, build_message
from .email_service import EmailService

__all__ = [
    "TelegramNotifier",
    "NotificationEvent",
    "EmailService",
    "build_message",
]
