"""External collaborators invoked by node executors."""

from .ai_client import AIClient
from .bot_client import BotApiClient
from .notifications import NotificationGateway
from .message_store import MessageStore

__all__ = [
    "AIClient",
    "BotApiClient",
    "NotificationGateway",
    "MessageStore",
]
