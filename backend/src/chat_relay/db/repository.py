"""Repository layer for database operations.

Provides the conversation, message and usage operations the relay needs.
Uses SQLite for local persistence (data/chat_relay.db).
"""

from pathlib import Path

from sqlalchemy import event, func
from sqlmodel import Session, SQLModel, create_engine, select

from chat_relay.db.models import (
    Conversation,
    Message,
    MessageRole,
    UsageLog,
    generate_id,
    utc_now,
)


def _enable_sqlite_fk(dbapi_connection, connection_record):
    """Enable foreign key constraints for SQLite connections."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

# Default database path
DEFAULT_DB_PATH = Path("data/chat_relay.db")

# Module-level engine (initialized on first use)
_engine = None


def get_engine(db_path: Path | None = None):
    """Get or create the database engine.

    Args:
        db_path: Optional custom database path. Defaults to data/chat_relay.db

    Returns:
        SQLModel engine instance
    """
    global _engine
    if _engine is None:
        path = db_path or DEFAULT_DB_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        database_url = f"sqlite:///{path}"
        _engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
        # Enable foreign key constraints for SQLite
        event.listen(_engine, "connect", _enable_sqlite_fk)
    return _engine


def init_db(db_path: Path | None = None) -> None:
    """Initialize the database by creating all tables.

    Args:
        db_path: Optional custom database path
    """
    engine = get_engine(db_path)
    SQLModel.metadata.create_all(engine)


class _Repository:
    """Shared commit handling.

    With ``autocommit=False`` writes are only flushed, so several repository
    calls can share the caller's transaction.
    """

    def __init__(self, session: Session, autocommit: bool = True):
        """Initialize repository with a database session.

        Args:
            session: SQLModel session for database operations
            autocommit: Commit after every write (default) or only flush
        """
        self.session = session
        self.autocommit = autocommit

    def _save(self, instance):
        self.session.add(instance)
        if self.autocommit:
            self.session.commit()
            self.session.refresh(instance)
        else:
            self.session.flush()
        return instance


class ConversationRepository(_Repository):
    """Repository for Conversation operations."""

    def create(
        self,
        model_id: str,
        user_id: str | None = None,
        title: str = "New Conversation",
        conversation_id: str | None = None,
        system_prompt: str | None = None,
    ) -> Conversation:
        """Create a new conversation.

        Args:
            model_id: Model the conversation uses
            user_id: Owner of the conversation
            title: Conversation title (placeholder by default)
            conversation_id: Use this id instead of generating one
            system_prompt: Optional system prompt

        Returns:
            Created Conversation instance
        """
        now = utc_now()
        conversation = Conversation(
            id=conversation_id or generate_id(),
            user_id=user_id,
            title=title,
            model_id=model_id,
            system_prompt=system_prompt,
            created_at=now,
            updated_at=now,
        )
        return self._save(conversation)

    def get(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID.

        Args:
            conversation_id: The conversation ID

        Returns:
            Conversation if found, None otherwise
        """
        return self.session.get(Conversation, conversation_id)

    def touch(self, conversation_id: str) -> Conversation | None:
        """Update the updated_at timestamp of a conversation.

        Args:
            conversation_id: The conversation ID

        Returns:
            Updated Conversation if found, None otherwise
        """
        conversation = self.get(conversation_id)
        if conversation is None:
            return None

        conversation.updated_at = utc_now()
        return self._save(conversation)


class MessageRepository(_Repository):
    """Repository for Message operations."""

    def create(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
    ) -> Message:
        """Create a new message.

        Does not touch the parent conversation; callers bump ``updated_at``
        in the same transaction.

        Args:
            conversation_id: Parent conversation ID
            role: Message role (user, assistant or system)
            content: Message text content

        Returns:
            Created Message instance
        """
        message = Message(
            id=generate_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=utc_now(),
        )
        return self._save(message)

    def get(self, message_id: str) -> Message | None:
        """Get a message by ID."""
        return self.session.get(Message, message_id)

    def list_by_conversation(
        self, conversation_id: str, limit: int = 100, offset: int = 0
    ) -> list[Message]:
        """List messages for a conversation ordered by created_at ascending.

        Args:
            conversation_id: The conversation ID
            limit: Maximum number of messages to return
            offset: Number of messages to skip

        Returns:
            List of Message instances
        """
        statement = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def count_by_conversation(self, conversation_id: str) -> int:
        """Count messages stored in a conversation."""
        statement = (
            select(func.count())
            .select_from(Message)
            .where(Message.conversation_id == conversation_id)
        )
        return int(self.session.exec(statement).one())


class UsageRepository(_Repository):
    """Repository for UsageLog records."""

    def create(
        self,
        model_id: str,
        user_id: str | None = None,
        conversation_id: str | None = None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        total_tokens: int = 0,
        estimated: bool = False,
        used_custom_key: bool = False,
    ) -> UsageLog:
        """Record token usage for one completion."""
        usage_log = UsageLog(
            id=generate_id(),
            user_id=user_id,
            conversation_id=conversation_id,
            model_id=model_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            estimated=estimated,
            used_custom_key=used_custom_key,
            created_at=utc_now(),
        )
        return self._save(usage_log)

    def list_by_user(self, user_id: str, limit: int = 100) -> list[UsageLog]:
        """List usage records for a user, newest first."""
        statement = (
            select(UsageLog)
            .where(UsageLog.user_id == user_id)
            .order_by(UsageLog.created_at.desc())
            .limit(limit)
        )
        return list(self.session.exec(statement).all())
