"""Database module for conversation persistence."""

from chat_relay.db.models import Conversation, Message, UsageLog
from chat_relay.db.persistence import SQLModelPersistence
from chat_relay.db.repository import (
    ConversationRepository,
    MessageRepository,
    UsageRepository,
    get_engine,
    init_db,
)

__all__ = [
    "Conversation",
    "Message",
    "UsageLog",
    "ConversationRepository",
    "MessageRepository",
    "UsageRepository",
    "SQLModelPersistence",
    "get_engine",
    "init_db",
]
