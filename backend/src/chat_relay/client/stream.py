"""Client for the relay's SSE passthrough.

Reuses the relay's own frame decoder and delta extractor on the receiving
side, and feeds a ``StreamReconciler``.
"""

import json
from collections.abc import AsyncIterable
from typing import Any

import httpx

from chat_relay.client.reconciler import DisplayMessage, StreamReconciler
from chat_relay.core.logging import get_logger
from chat_relay.relay.errors import RelayError
from chat_relay.relay.extractor import ContentDelta, Done, UpstreamFailure, extract_delta
from chat_relay.relay.sse import iter_sse_payloads

logger = get_logger(__name__)


def parse_error_payload(payload: str) -> tuple[str, str | None] | None:
    """Return ``(message, code)`` if a payload is an error event."""
    try:
        data = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "Unknown error"), error.get("code")
    if isinstance(error, str):
        return error, None
    return None


async def consume_passthrough(
    chunks: AsyncIterable[bytes],
    reconciler: StreamReconciler,
) -> DisplayMessage | None:
    """Drive a reconciler from a passthrough byte stream.

    Returns:
        The finalized message, or None if the stream ended in an error.
    """
    if not reconciler.is_streaming:
        reconciler.begin()

    try:
        async for payload in iter_sse_payloads(chunks):
            extracted = extract_delta(payload)
            if isinstance(extracted, Done):
                return reconciler.complete()
            if isinstance(extracted, ContentDelta):
                reconciler.add_delta(extracted.text)
            elif isinstance(extracted, UpstreamFailure):
                code = None if extracted.code is None else str(extracted.code)
                reconciler.fail(extracted.message, code)
                return None
    except RelayError as e:
        reconciler.fail(e.message, e.code)
        return None
    except httpx.RequestError as e:
        reconciler.fail(f"Connection lost: {str(e) or type(e).__name__}")
        return None

    # Stream closed without the [DONE] sentinel.
    return reconciler.complete()


class ChatStreamClient:
    """Sends chat requests to the relay route and reconciles the stream.

    Example usage:
        client = ChatStreamClient(base_url="http://localhost:8000")
        reconciler = StreamReconciler(render=view.update)
        message = await client.send(
            [{"role": "user", "content": "Hello"}],
            reconciler,
            model="deepseek/deepseek-r1-0528:free",
        )
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(
        self,
        messages: list[dict[str, str]],
        reconciler: StreamReconciler,
        model: str | None = None,
        conversation_id: str | None = None,
        temperature: float = 0.7,
        headers: dict[str, str] | None = None,
    ) -> DisplayMessage | None:
        """Stream a completion into ``reconciler``.

        Returns:
            The finalized message, or None on error (already routed through
            the reconciler's error channels).
        """
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "conversation_id": conversation_id,
            "temperature": temperature,
        }
        reconciler.begin(conversation_id)

        try:
            async with self._client.stream(
                "POST", "/api/v1/chat/completions", json=body, headers=headers
            ) as response:
                if not response.is_success:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    message, code = parse_error_payload(raw) or (
                        f"Request failed with status {response.status_code}",
                        None,
                    )
                    reconciler.fail(message, code)
                    return None
                return await consume_passthrough(response.aiter_bytes(), reconciler)
        except httpx.RequestError as e:
            reconciler.fail(f"Connection failed: {str(e) or type(e).__name__}")
            return None
