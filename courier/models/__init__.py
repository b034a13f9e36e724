from courier.models.bot import Bot
from courier.models.client import HUMAN_HANDLED_STATUSES, Client
from courier.models.conversation import Conversation
from courier.models.message import Message

__all__ = [
    "Bot",
    "Client",
    "Conversation",
    "Message",
    "HUMAN_HANDLED_STATUSES",
]
