"""Delta extraction from decoded stream payloads.

Upstream providers are not consistent between delta-style and
full-message-style chunks, so extraction tries the known shapes in order.
All functions here are pure.
"""

import json
from dataclasses import dataclass
from typing import Any

from chat_relay.relay.base import Usage

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ContentDelta:
    """A fragment of generated text."""

    text: str


@dataclass(frozen=True)
class Done:
    """Terminal sentinel; the upstream finished the stream."""


@dataclass(frozen=True)
class Unparseable:
    """Payload carried no recognizable content. Skipped by the relay."""

    reason: str


@dataclass(frozen=True)
class UpstreamFailure:
    """In-stream error event: an ``error`` object or ``finish_reason == "error"``."""

    message: str
    code: int | str | None = None


ExtractResult = ContentDelta | Done | Unparseable | UpstreamFailure


def _parse(payload: str) -> Any:
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, ValueError):
        return None


def _first_choice(data: dict[str, Any]) -> dict[str, Any] | None:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def _failure(data: dict[str, Any], choice: dict[str, Any] | None) -> UpstreamFailure | None:
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return UpstreamFailure(
            str(message) if message else "Upstream reported an error",
            error.get("code"),
        )
    if isinstance(error, str) and error:
        return UpstreamFailure(error)
    if choice is not None and choice.get("finish_reason") == "error":
        return UpstreamFailure("Upstream finished with an error")
    return None


def extract_delta(payload: str) -> ExtractResult:
    """Map an event payload to a content delta, a terminal signal, or a skip.

    Args:
        payload: Event payload text with the ``data: `` prefix removed.

    Returns:
        ``Done`` for the ``[DONE]`` sentinel, ``UpstreamFailure`` for an error
        event, ``ContentDelta`` when any known content shape is present,
        ``Unparseable`` otherwise.
    """
    if payload.strip() == DONE_SENTINEL:
        return Done()

    data = _parse(payload)
    if data is None:
        return Unparseable("invalid json")
    if not isinstance(data, dict):
        return Unparseable("not an object")

    choice = _first_choice(data)
    failure = _failure(data, choice)
    if failure is not None:
        return failure

    if choice is not None:
        delta = choice.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return ContentDelta(delta["content"])

        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return ContentDelta(message["content"])

        if isinstance(choice.get("text"), str):
            return ContentDelta(choice["text"])

    if isinstance(data.get("content"), str):
        return ContentDelta(data["content"])

    return Unparseable("no content field")


@dataclass(frozen=True)
class ChunkInfo:
    """Metadata a chunk may carry besides its content."""

    completion_id: str | None = None
    model: str | None = None
    finish_reason: str | None = None
    usage: Usage | None = None


def extract_chunk_info(payload: str) -> ChunkInfo:
    """Read completion id, model, finish reason and usage from a payload."""
    data = _parse(payload)
    if not isinstance(data, dict):
        return ChunkInfo()

    choice = _first_choice(data) or {}
    finish_reason = choice.get("finish_reason")
    return ChunkInfo(
        completion_id=data.get("id") if isinstance(data.get("id"), str) else None,
        model=data.get("model") if isinstance(data.get("model"), str) else None,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        usage=Usage.from_dict(data.get("usage")),
    )
