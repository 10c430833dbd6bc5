"""SQLModel implementation of the relay persistence port."""

from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from chat_relay.core.logging import get_logger
from chat_relay.db.repository import (
    ConversationRepository,
    MessageRepository,
    UsageRepository,
    get_engine,
)
from chat_relay.relay.base import PersistencePort, Usage

logger = get_logger(__name__)


class SQLModelPersistence(PersistencePort):
    """Stores completions in the conversations/messages/usage_logs tables.

    Args:
        engine: SQLAlchemy engine. Defaults to the module engine.
        placeholder_title: Title given to conversations created here.
        retry_attempts: Attempts for each storage operation that fails with
            an ``OperationalError`` (e.g. a locked SQLite database).
    """

    def __init__(
        self,
        engine=None,
        placeholder_title: str = "New Conversation",
        retry_attempts: int = 3,
    ) -> None:
        self.engine = engine or get_engine()
        self.placeholder_title = placeholder_title
        self.retry_attempts = max(retry_attempts, 1)

    def _with_retry(self, operation, *args):
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return operation(*args)
            except OperationalError as e:
                if attempt == self.retry_attempts:
                    raise
                logger.warning(
                    "storage_retry",
                    operation=operation.__name__,
                    attempt=attempt,
                    error=str(e),
                )

    def save_assistant_message(
        self,
        conversation_id: str | None,
        user_id: str | None,
        model_id: str,
        content: str,
    ) -> str:
        return self._with_retry(
            self._save_assistant_message, conversation_id, user_id, model_id, content
        )

    def _save_assistant_message(
        self,
        conversation_id: str | None,
        user_id: str | None,
        model_id: str,
        content: str,
    ) -> str:
        with Session(self.engine) as session:
            conversations = ConversationRepository(session, autocommit=False)
            messages = MessageRepository(session, autocommit=False)
            # Uncommitted work is rolled back when the session closes.
            if conversation_id is None or conversations.get(conversation_id) is None:
                conversation = conversations.create(
                    model_id=model_id,
                    user_id=user_id,
                    title=self.placeholder_title,
                    conversation_id=conversation_id,
                )
                logger.info(
                    "conversation_created",
                    conversation_id=conversation.id,
                    requested_id=conversation_id,
                )
                conversation_id = conversation.id

            messages.create(conversation_id, "assistant", content)
            conversations.touch(conversation_id)
            session.commit()
        return conversation_id

    def log_usage(
        self,
        user_id: str | None,
        conversation_id: str | None,
        model_id: str,
        usage: Usage,
        used_custom_key: bool = False,
    ) -> None:
        self._with_retry(
            self._log_usage, user_id, conversation_id, model_id, usage, used_custom_key
        )

    def _log_usage(
        self,
        user_id: str | None,
        conversation_id: str | None,
        model_id: str,
        usage: Usage,
        used_custom_key: bool,
    ) -> None:
        with Session(self.engine) as session:
            UsageRepository(session).create(
                model_id=model_id,
                user_id=user_id,
                conversation_id=conversation_id,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                estimated=usage.estimated,
                used_custom_key=used_custom_key,
            )

    def count_messages(self, conversation_id: str) -> int:
        with Session(self.engine) as session:
            return MessageRepository(session).count_by_conversation(conversation_id)
