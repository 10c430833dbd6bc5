"""Chat completion endpoint exposing the relay over HTTP.

Streaming responses are relayed as Server-Sent Events in the OpenAI chunk
format and terminated by ``[DONE]``; failures become a single error event.
"""

import json
import threading
from collections.abc import AsyncIterator
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chat_relay.core.config import get_settings
from chat_relay.core.logging import get_logger
from chat_relay.db import SQLModelPersistence
from chat_relay.relay import (
    AuthContext,
    CompletedEvent,
    CompletionRelay,
    CompletionRequest,
    DeltaEvent,
    PersistenceHandoff,
)
from chat_relay.relay.errors import (
    ConfigurationError,
    QuotaExceeded,
    RelayError,
    UpstreamStatusError,
)
from chat_relay.relay.request import generate_request_id

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])
logger = get_logger(__name__)

# Global relay instance (lazy loaded, thread-safe)
_relay: CompletionRelay | None = None
_relay_lock = threading.Lock()


class ChatMessageBody(BaseModel):
    """A single inbound chat message."""

    role: Literal["user", "assistant", "system"]
    content: str


class ChatCompletionBody(BaseModel):
    """Inbound chat completion request. Unknown fields are ignored."""

    messages: list[ChatMessageBody] = Field(min_length=1)
    model: str | None = None
    stream: bool = False
    conversation_id: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    system_prompt: str | None = None


def get_relay() -> CompletionRelay:
    """Get or create the global relay instance (thread-safe)."""
    global _relay
    if _relay is None:
        with _relay_lock:
            # Double-check locking pattern
            if _relay is None:
                settings = get_settings()
                persistence = SQLModelPersistence(
                    placeholder_title=settings.placeholder_title,
                    retry_attempts=settings.storage_retry_attempts,
                )
                handoff = PersistenceHandoff(
                    persistence,
                    title_thresholds=settings.title_generation_thresholds,
                )
                _relay = CompletionRelay.from_settings(settings, handoff=handoff)
    return _relay


async def close_relay() -> None:
    """Close the global relay, if one was created."""
    global _relay
    if _relay is not None:
        await _relay.aclose()
        _relay = None


def get_auth_context(
    x_user_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> AuthContext:
    """Resolve the caller.

    Session validation and quota checks belong to the auth layer, which
    replaces this dependency via ``app.dependency_overrides``.
    """
    return AuthContext(user_id=x_user_id, api_key_override=x_api_key)


def format_sse(data: str) -> str:
    """Frame one SSE ``data:`` event."""
    return f"data: {data}\n\n"


def delta_chunk(text: str, request_id: str, model: str) -> dict[str, Any]:
    """OpenAI-compatible ``chat.completion.chunk`` for one delta."""
    return {
        "choices": [
            {
                "delta": {"content": text},
                "index": 0,
                "finish_reason": None,
            }
        ],
        "id": request_id,
        "model": model,
        "object": "chat.completion.chunk",
    }


def error_status(error: RelayError) -> int:
    """HTTP status for a failed non-streaming call."""
    if isinstance(error, QuotaExceeded):
        return 403
    if isinstance(error, ConfigurationError):
        return 500
    if error.status == 400:
        return 400
    if isinstance(error, UpstreamStatusError) and error.status and 400 <= error.status < 500:
        return error.status
    return 502


async def stream_passthrough(
    relay: CompletionRelay,
    request: CompletionRequest,
    auth: AuthContext,
    conversation_id: str | None,
    request_id: str,
) -> AsyncIterator[str]:
    """Yield SSE frames for one relay call."""
    model = relay.model_for(request)
    async for event in relay.events(
        request, auth, conversation_id=conversation_id, request_id=request_id
    ):
        if isinstance(event, DeltaEvent):
            yield format_sse(json.dumps(delta_chunk(event.text, request_id, model)))
        elif isinstance(event, CompletedEvent):
            yield format_sse("[DONE]")
        else:
            yield format_sse(json.dumps(event.error.to_payload()))


@router.post("/completions")
async def create_chat_completion(
    body: ChatCompletionBody,
    auth: AuthContext = Depends(get_auth_context),
    relay: CompletionRelay = Depends(get_relay),
):
    """Relay a chat completion, streamed or as a single JSON response."""
    request_id = generate_request_id()
    logger.info(
        "chat_request",
        request_id=request_id,
        stream=body.stream,
        temperature=body.temperature,
        user_id=auth.user_id,
    )

    if auth.quota_exceeded:
        error = QuotaExceeded(request_id=request_id)
        return JSONResponse(error.to_payload(), status_code=403)

    request = CompletionRequest(
        messages=[message.model_dump() for message in body.messages],
        model_id=body.model,
        temperature=body.temperature,
        stream=body.stream,
        system_prompt=body.system_prompt,
    )

    if body.stream:
        return StreamingResponse(
            stream_passthrough(relay, request, auth, body.conversation_id, request_id),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Request-ID": request_id},
        )

    try:
        result = await relay.run(
            request, auth, conversation_id=body.conversation_id, request_id=request_id
        )
    except RelayError as error:
        return JSONResponse(error.to_payload(), status_code=error_status(error))

    data = dict(result.raw_response or {})
    data["conversation_id"] = result.conversation_id
    data["requestId"] = result.request_id
    return data
