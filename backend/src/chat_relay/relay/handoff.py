"""Persistence handoff for finished completions.

Runs once per successful relay call. Storage failures are logged with the
conversation and request ids and never fail the call: the caller already
holds the generated content.
"""

import asyncio
from collections.abc import Awaitable, Callable

from chat_relay.core.logging import get_logger
from chat_relay.relay.base import CompletionRecord, PersistencePort, Usage
from chat_relay.relay.errors import PersistenceError

logger = get_logger(__name__)

TitleHook = Callable[[str], Awaitable[None] | None]


class PersistenceHandoff:
    """Stores a completion through a ``PersistencePort``.

    Args:
        port: Storage implementation.
        title_hook: Optional collaborator called with the conversation id when
            the message count reaches one of ``title_thresholds``.
        title_thresholds: Message counts that trigger title generation.
    """

    def __init__(
        self,
        port: PersistencePort,
        title_hook: TitleHook | None = None,
        title_thresholds: list[int] | tuple[int, ...] = (1, 3, 5),
    ) -> None:
        self.port = port
        self.title_hook = title_hook
        self.title_thresholds = tuple(title_thresholds)

    async def persist(self, record: CompletionRecord, prompt_text: str = "") -> str | None:
        """Save the assistant message, then record usage.

        Args:
            record: The finished completion.
            prompt_text: Prompt content, used to estimate usage when the
                provider reported none.

        Returns:
            The conversation id the message was stored in, or None if the
            save failed.
        """
        try:
            conversation_id = await asyncio.to_thread(
                self.port.save_assistant_message,
                record.conversation_id,
                record.user_id,
                record.model_id,
                record.content,
            )
        except Exception as e:
            logger.error(
                "persistence_failed",
                request_id=record.request_id,
                conversation_id=record.conversation_id,
                code=PersistenceError.code,
                error=str(e),
            )
            return None

        logger.info(
            "assistant_message_saved",
            request_id=record.request_id,
            conversation_id=conversation_id,
            content_length=len(record.content),
        )

        await self._log_usage(record, conversation_id, prompt_text)
        await self._maybe_generate_title(record, conversation_id)
        return conversation_id

    async def _log_usage(
        self, record: CompletionRecord, conversation_id: str, prompt_text: str
    ) -> None:
        usage = record.usage or Usage.estimate(prompt_text, record.content)
        try:
            await asyncio.to_thread(
                self.port.log_usage,
                record.user_id,
                conversation_id,
                record.model_id,
                usage,
                record.used_custom_key,
            )
        except Exception as e:
            # Usage accounting is best-effort; the message insert stands.
            logger.warning(
                "usage_log_failed",
                request_id=record.request_id,
                conversation_id=conversation_id,
                error=str(e),
            )

    async def _maybe_generate_title(self, record: CompletionRecord, conversation_id: str) -> None:
        if self.title_hook is None:
            return
        try:
            count = await asyncio.to_thread(self.port.count_messages, conversation_id)
            if count not in self.title_thresholds:
                return
            result = self.title_hook(conversation_id)
            if asyncio.iscoroutine(result):
                await result
            logger.debug(
                "title_generation_triggered",
                request_id=record.request_id,
                conversation_id=conversation_id,
                message_count=count,
            )
        except Exception as e:
            logger.warning(
                "title_generation_failed",
                request_id=record.request_id,
                conversation_id=conversation_id,
                error=str(e),
            )
