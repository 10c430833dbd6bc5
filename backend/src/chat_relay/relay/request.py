"""Completion request construction.

Optional sampling parameters are explicit named fields and are only sent
upstream when set; nothing else from the inbound request is forwarded.
"""

import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from chat_relay.relay.base import AuthContext
from chat_relay.relay.errors import ConfigurationError, RequestValidationError

VALID_ROLES = frozenset({"user", "assistant", "system"})

ChatTurn = dict[str, str]


def generate_request_id() -> str:
    """Generate a request id of the form ``req_<ms>_<random>``."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def validate_messages(messages: Any, request_id: str | None = None) -> list[ChatTurn]:
    """Check an inbound message list and return a normalized copy.

    Raises:
        RequestValidationError: If the list is empty or any message has an
            unknown role or non-string content.
    """
    if not isinstance(messages, list) or not messages:
        raise RequestValidationError(
            "Messages array is required and must not be empty",
            request_id=request_id,
        )

    normalized: list[ChatTurn] = []
    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise RequestValidationError(
                f"Message at index {index} must be an object",
                request_id=request_id,
            )
        role = message.get("role")
        if role not in VALID_ROLES:
            raise RequestValidationError(
                f"Message at index {index} has invalid role: {role}",
                request_id=request_id,
            )
        content = message.get("content")
        if not isinstance(content, str):
            raise RequestValidationError(
                f"Message at index {index} is missing 'content' field",
                request_id=request_id,
            )
        normalized.append({"role": role, "content": content})
    return normalized


@dataclass(frozen=True)
class RequestOptions:
    """Optional sampling parameters. ``None`` means "not sent upstream"."""

    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop: list[str] | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in (
                ("top_p", self.top_p),
                ("top_k", self.top_k),
                ("stop", self.stop),
                ("presence_penalty", self.presence_penalty),
                ("frequency_penalty", self.frequency_penalty),
            )
            if value is not None
        }


@dataclass
class CompletionRequest:
    """One logical chat-completion call. Transient, never persisted."""

    messages: list[ChatTurn]
    model_id: str | None = None
    temperature: float | None = None
    stream: bool = True
    api_key_override: str | None = None
    system_prompt: str | None = None
    options: RequestOptions = field(default_factory=RequestOptions)


@dataclass(frozen=True)
class UpstreamRequest:
    """A fully built HTTP request for the provider."""

    path: str
    headers: dict[str, str]
    payload: dict[str, Any]
    used_custom_key: bool = False

    @property
    def model_id(self) -> str:
        return self.payload["model"]


class RequestBuilder(ABC):
    """Strategy that turns a ``CompletionRequest`` into an upstream request."""

    @abstractmethod
    def build(self, request: CompletionRequest, auth: AuthContext) -> UpstreamRequest:
        """Build the provider request.

        Raises:
            ConfigurationError: If no API key is available.
        """

    @abstractmethod
    def model_for(self, request: CompletionRequest) -> str:
        """Resolve the model id a request will be sent with."""


class OpenAICompatRequestBuilder(RequestBuilder):
    """Builds OpenAI-compatible ``/chat/completions`` requests.

    Works with OpenRouter and any other provider speaking the same protocol.

    Example usage:
        builder = OpenAICompatRequestBuilder(
            api_key=os.getenv("CHAT_RELAY_API_KEY"),
            default_model_id="deepseek/deepseek-r1-0528:free",
            default_system_prompt="You are a helpful assistant.",
        )
    """

    def __init__(
        self,
        api_key: str | None = None,
        default_model_id: str = "deepseek/deepseek-r1-0528:free",
        default_system_prompt: str | None = None,
        default_temperature: float = 0.7,
        max_tokens: int = 4000,
        http_referer: str | None = None,
        app_title: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.default_model_id = default_model_id
        self.default_system_prompt = default_system_prompt
        self.default_temperature = default_temperature
        self.max_tokens = max_tokens
        self.http_referer = http_referer
        self.app_title = app_title

    def prepare_messages(
        self, messages: list[ChatTurn], system_prompt: str | None = None
    ) -> list[ChatTurn]:
        """Copy messages, prefixing a system prompt when none is present."""
        prepared = [dict(message) for message in messages]
        prompt = system_prompt or self.default_system_prompt
        has_system = any(message["role"] == "system" for message in prepared)
        if prompt and not has_system:
            prepared.insert(0, {"role": "system", "content": prompt})
        return prepared

    def model_for(self, request: CompletionRequest) -> str:
        return request.model_id or self.default_model_id

    def build(self, request: CompletionRequest, auth: AuthContext) -> UpstreamRequest:
        override = request.api_key_override or auth.api_key_override
        api_key = override or self.api_key
        if not api_key:
            raise ConfigurationError("Upstream API key is not configured")

        temperature = request.temperature
        if temperature is None:
            temperature = self.default_temperature
        max_tokens = request.options.max_tokens or self.max_tokens

        payload: dict[str, Any] = {
            "model": self.model_for(request),
            "messages": self.prepare_messages(request.messages, request.system_prompt),
            "stream": request.stream,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        payload.update(request.options.to_payload())

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if request.stream else "application/json",
        }
        if self.http_referer:
            headers["HTTP-Referer"] = self.http_referer
        if self.app_title:
            headers["X-Title"] = self.app_title

        return UpstreamRequest(
            path="/chat/completions",
            headers=headers,
            payload=payload,
            used_custom_key=bool(override),
        )
