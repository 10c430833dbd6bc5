"""Client-side reconciliation of a streaming assistant message.

Deltas are accumulated per call and repainted at most once per flush
interval, however finely upstream chunks the text. On completion the
in-progress placeholder is replaced by the final message; on error it is
removed and the error is routed to the paywall or the generic error channel.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from chat_relay.core.config import get_settings
from chat_relay.core.logging import get_logger
from chat_relay.relay.errors import QuotaExceeded, is_quota_message

logger = get_logger(__name__)

EMPTY_RESPONSE_TEXT = "Error: Failed to get a response. Please try again."


@dataclass
class DisplayMessage:
    """A message as shown in the conversation view."""

    role: str
    content: str
    id: str | None = None
    conversation_id: str | None = None
    is_streaming: bool = False
    is_error: bool = False
    created_at: datetime | None = None


@dataclass
class StreamAccumulator:
    """Text received for one in-progress message. Owned by a single call."""

    parts: list[str] = field(default_factory=list)

    def add(self, text: str) -> None:
        self.parts.append(text)

    @property
    def content(self) -> str:
        return "".join(self.parts)

    @property
    def chunk_count(self) -> int:
        return len(self.parts)


class StreamReconciler:
    """Keeps a message list in sync with one streaming completion at a time.

    Args:
        render: Called with the current message list on every repaint.
        messages: Durable messages already on screen.
        flush_interval: Seconds between coalesced repaints while streaming.
            Defaults to the configured reconciler flush interval.
        on_error: Receives generic error messages.
        on_paywall: Receives quota errors, which need an upgrade prompt
            rather than an error banner.
    """

    def __init__(
        self,
        render: Callable[[list[DisplayMessage]], None],
        messages: list[DisplayMessage] | None = None,
        flush_interval: float | None = None,
        on_error: Callable[[str], None] | None = None,
        on_paywall: Callable[[str], None] | None = None,
    ) -> None:
        self.render = render
        self.messages: list[DisplayMessage] = list(messages or [])
        if flush_interval is None:
            flush_interval = get_settings().reconciler_flush_interval_ms / 1000
        self.flush_interval = flush_interval
        self.on_error = on_error
        self.on_paywall = on_paywall
        self.repaint_count = 0
        self._accumulator: StreamAccumulator | None = None
        self._placeholder: DisplayMessage | None = None
        self._scheduled: asyncio.TimerHandle | None = None

    @property
    def is_streaming(self) -> bool:
        return self._accumulator is not None

    def begin(self, conversation_id: str | None = None) -> StreamAccumulator:
        """Show an empty streaming placeholder and start a new accumulator."""
        if self._accumulator is not None:
            raise RuntimeError("a streaming message is already in progress")
        self._placeholder = DisplayMessage(
            role="assistant",
            content="",
            conversation_id=conversation_id,
            is_streaming=True,
        )
        self.messages.append(self._placeholder)
        self._accumulator = StreamAccumulator()
        self._repaint()
        return self._accumulator

    def add_delta(self, text: str) -> None:
        """Accumulate a delta and schedule a repaint if none is pending."""
        if self._accumulator is None or not text:
            return
        self._accumulator.add(text)
        if self._scheduled is None:
            loop = asyncio.get_running_loop()
            self._scheduled = loop.call_later(self.flush_interval, self._flush)

    def complete(
        self, final_content: str | None = None, message_id: str | None = None
    ) -> DisplayMessage | None:
        """Replace the placeholder with the finished message.

        Empty content becomes a visible error message instead of a blank
        bubble.
        """
        if self._accumulator is None or self._placeholder is None:
            return None
        self._cancel_flush()
        content = final_content or self._accumulator.content

        if content.strip():
            message = DisplayMessage(
                role="assistant",
                content=content,
                id=message_id,
                conversation_id=self._placeholder.conversation_id,
                created_at=datetime.now(timezone.utc),
            )
        else:
            logger.warning("stream_completed_empty")
            message = DisplayMessage(role="system", content=EMPTY_RESPONSE_TEXT, is_error=True)

        self._replace_placeholder(message)
        self._end()
        self._repaint()
        return message

    def fail(self, message: str, code: str | None = None) -> None:
        """Drop the placeholder and route the error to the right channel."""
        if self._accumulator is None:
            return
        self._cancel_flush()
        self._replace_placeholder(None)
        self._end()
        self._repaint()

        if code == QuotaExceeded.code or is_quota_message(message):
            logger.info("stream_failed_quota", error=message)
            if self.on_paywall is not None:
                self.on_paywall(message)
        else:
            logger.warning("stream_failed", code=code, error=message)
            if self.on_error is not None:
                self.on_error(message)

    def _flush(self) -> None:
        self._scheduled = None
        if self._accumulator is None or self._placeholder is None:
            return
        self._placeholder.content = self._accumulator.content
        self._repaint()

    def _cancel_flush(self) -> None:
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None

    def _replace_placeholder(self, message: DisplayMessage | None) -> None:
        for index, existing in enumerate(self.messages):
            if existing is self._placeholder:
                if message is None:
                    del self.messages[index]
                else:
                    self.messages[index] = message
                return

    def _end(self) -> None:
        self._accumulator = None
        self._placeholder = None

    def _repaint(self) -> None:
        self.repaint_count += 1
        self.render(list(self.messages))
