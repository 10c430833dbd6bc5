"""SQLModel models for conversation persistence.

Schema conventions:
- Table names: snake_case plural (conversations, messages, usage_logs)
- Column names: snake_case
- Foreign keys: {table_singular}_id
"""

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from sqlmodel import Field, Relationship, SQLModel

# Type alias for message role
MessageRole = Literal["user", "assistant", "system"]


def generate_id() -> str:
    """Generate a UUID-based ID for database records."""
    return str(uuid4())


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class Conversation(SQLModel, table=True):
    """Conversation model representing a chat thread.

    Attributes:
        id: UUID-based primary key
        user_id: Owner of the conversation (None for anonymous callers)
        title: Conversation title, a placeholder until titled externally
        model_id: Model the conversation was started with
        system_prompt: Optional per-conversation system prompt
        created_at: When the conversation was created
        updated_at: When the conversation last received a message
    """

    __tablename__ = "conversations"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_id, primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    title: str = "New Conversation"
    model_id: str
    system_prompt: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now, index=True)

    # Relationship to messages
    messages: list["Message"] = Relationship(back_populates="conversation")


class Message(SQLModel, table=True):
    """Message model representing a single message in a conversation.

    Attributes:
        id: UUID-based primary key
        conversation_id: Foreign key to parent conversation
        role: Message role (user, assistant or system)
        content: Message text content
        created_at: When the message was created
    """

    __tablename__ = "messages"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_id, primary_key=True)
    conversation_id: str = Field(foreign_key="conversations.id", index=True)
    role: str  # "user", "assistant" or "system" - stored as string in DB
    content: str
    created_at: datetime = Field(default_factory=utc_now)

    # Relationship to conversation
    conversation: Conversation | None = Relationship(back_populates="messages")


class UsageLog(SQLModel, table=True):
    """Token usage recorded for one completion."""

    __tablename__ = "usage_logs"
    __table_args__ = {"extend_existing": True}

    id: str = Field(default_factory=generate_id, primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    conversation_id: str | None = Field(default=None, foreign_key="conversations.id")
    model_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False
    used_custom_key: bool = False
    created_at: datetime = Field(default_factory=utc_now, index=True)
