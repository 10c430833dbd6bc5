"""Ports and value types shared by the relay components."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class AuthContext:
    """Caller identity as resolved by the (external) auth layer.

    Attributes:
        user_id: Authenticated user id, or None for anonymous callers.
        api_key_override: User-supplied provider key; takes precedence over
            the shared key.
        quota_exceeded: Set by the auth layer when the caller is out of quota.
    """

    user_id: str | None = None
    api_key_override: str | None = None
    quota_exceeded: bool = False


@dataclass(frozen=True)
class Usage:
    """Token usage reported by the provider or estimated locally."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "Usage | None":
        """Build from a provider ``usage`` object, None if absent or invalid."""
        if not isinstance(data, dict):
            return None
        try:
            prompt = int(data.get("prompt_tokens") or 0)
            completion = int(data.get("completion_tokens") or 0)
            total = int(data.get("total_tokens") or prompt + completion)
        except (TypeError, ValueError):
            return None
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    @classmethod
    def estimate(cls, prompt_text: str, completion_text: str) -> "Usage":
        """Rough estimate at one token per four characters."""
        prompt = (len(prompt_text) + 3) // 4
        completion = (len(completion_text) + 3) // 4
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            estimated=True,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class AggregatedResult:
    """Content accumulated over one relay call.

    Owned by a single call and discarded after the persistence handoff.
    """

    full_content: str = ""
    usage: Usage | None = None
    completion_id: str | None = None
    model: str | None = None
    finish_reason: str | None = None
    chunk_count: int = 0

    def append(self, text: str) -> None:
        self.full_content += text
        self.chunk_count += 1


@dataclass(frozen=True)
class CompletionRecord:
    """Everything the persistence handoff needs to store one completion."""

    request_id: str
    content: str
    model_id: str
    conversation_id: str | None = None
    user_id: str | None = None
    usage: Usage | None = None
    used_custom_key: bool = False


@dataclass
class RelayResult:
    """Terminal result of a successful relay call."""

    request_id: str
    content: str
    model_id: str
    usage: Usage | None = None
    conversation_id: str | None = None
    attempts: int = 1
    completion_id: str | None = None
    finish_reason: str | None = None
    persisted: bool = False
    raw_response: dict[str, Any] | None = field(default=None, repr=False)


class PersistencePort(ABC):
    """Storage operations the relay hands a finished completion to.

    Implementations own their transactions. The relay never deletes or
    re-titles conversations through this port.
    """

    @abstractmethod
    def save_assistant_message(
        self,
        conversation_id: str | None,
        user_id: str | None,
        model_id: str,
        content: str,
    ) -> str:
        """Insert the assistant message and bump the conversation timestamp.

        Creates the conversation first when ``conversation_id`` is None or
        does not exist yet. Runs as one transaction.

        Returns:
            The id of the conversation the message was stored in.
        """

    @abstractmethod
    def log_usage(
        self,
        user_id: str | None,
        conversation_id: str | None,
        model_id: str,
        usage: Usage,
        used_custom_key: bool = False,
    ) -> None:
        """Record token usage for the caller."""

    def count_messages(self, conversation_id: str) -> int:
        """Number of messages stored in a conversation."""
        return 0
