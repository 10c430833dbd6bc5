"""Streaming completion relay.

Per call the relay walks ``IDLE -> CONNECTING -> STREAMING -> COMPLETED``
(or ``FAILED``). Retryable failures are retried with backoff only while no
content has reached the caller; once a delta has been delivered a failure
is terminal and carries the partial content.
"""

import asyncio
import contextlib
import dataclasses
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from chat_relay.core.config import Settings, get_settings
from chat_relay.core.logging import get_logger
from chat_relay.relay.base import (
    AggregatedResult,
    AuthContext,
    CompletionRecord,
    RelayResult,
    Usage,
)
from chat_relay.relay.errors import (
    ConfigurationError,
    EmptyCompletion,
    MalformedUpstream,
    NetworkError,
    QuotaExceeded,
    RelayError,
    StreamInterrupted,
    UpstreamStatusError,
    is_quota_message,
)
from chat_relay.relay.extractor import (
    ContentDelta,
    Done,
    Unparseable,
    UpstreamFailure,
    extract_chunk_info,
    extract_delta,
)
from chat_relay.relay.handoff import PersistenceHandoff
from chat_relay.relay.request import (
    CompletionRequest,
    OpenAICompatRequestBuilder,
    RequestBuilder,
    UpstreamRequest,
    generate_request_id,
    validate_messages,
)
from chat_relay.relay.retry import RetryPolicy, RetryState
from chat_relay.relay.sse import iter_sse_payloads, looks_like_html

logger = get_logger(__name__)

DeltaSink = Callable[[str], Awaitable[None] | None]
CompleteCallback = Callable[[RelayResult], Awaitable[None] | None]
ErrorCallback = Callable[[RelayError], Awaitable[None] | None]


class RelayState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RelayCall:
    """State owned by a single relay call."""

    request_id: str
    request: CompletionRequest
    auth: AuthContext
    conversation_id: str | None
    retry: RetryState
    state: RelayState = RelayState.IDLE
    result: AggregatedResult = field(default_factory=AggregatedResult)
    content_emitted: bool = False
    upstream: UpstreamRequest | None = None
    raw_response: dict[str, Any] | None = None

    @property
    def attempts(self) -> int:
        return self.retry.attempt + 1


@dataclass(frozen=True)
class DeltaEvent:
    text: str


@dataclass(frozen=True)
class CompletedEvent:
    result: RelayResult


@dataclass(frozen=True)
class FailedEvent:
    error: RelayError


RelayEvent = DeltaEvent | CompletedEvent | FailedEvent


async def _notify(callback: Callable[[Any], Any] | None, value: Any) -> None:
    if callback is None:
        return
    result = callback(value)
    if asyncio.iscoroutine(result):
        await result


class CompletionRelay:
    """Relays one chat completion at a time per call to an upstream provider.

    Calls share no mutable state, so one relay instance may serve many
    concurrent calls.

    Example usage:
        relay = CompletionRelay.from_settings(handoff=handoff)
        result = await relay.run(
            CompletionRequest(messages=[{"role": "user", "content": "Hi"}]),
            AuthContext(user_id="u1"),
            on_delta=print,
        )
    """

    def __init__(
        self,
        builder: RequestBuilder,
        base_url: str = "https://openrouter.ai/api/v1",
        retry_policy: RetryPolicy | None = None,
        handoff: PersistenceHandoff | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
        connect_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.builder = builder
        self.retry_policy = retry_policy or RetryPolicy()
        self.handoff = handoff
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        handoff: PersistenceHandoff | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "CompletionRelay":
        """Create a relay wired from application settings."""
        settings = settings or get_settings()
        builder = OpenAICompatRequestBuilder(
            api_key=settings.api_key,
            default_model_id=settings.default_model_id,
            default_system_prompt=settings.default_system_prompt,
            default_temperature=settings.default_temperature,
            max_tokens=settings.max_tokens,
            http_referer=settings.http_referer,
            app_title=settings.app_title,
        )
        retry_policy = RetryPolicy(
            max_attempts=settings.max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            jitter=settings.retry_jitter,
            max_delay_ms=settings.retry_max_delay_ms,
        )
        logger.info(
            "relay_initialized",
            base_url=settings.upstream_base_url,
            model=settings.default_model_id,
            max_retries=settings.max_retries,
        )
        return cls(
            builder,
            base_url=settings.upstream_base_url,
            retry_policy=retry_policy,
            handoff=handoff,
            http_client=http_client,
            timeout=settings.request_timeout_s,
            connect_timeout=settings.connect_timeout_s,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if the relay created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        request: CompletionRequest,
        auth: AuthContext | None = None,
        conversation_id: str | None = None,
        on_delta: DeltaSink | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        request_id: str | None = None,
    ) -> RelayResult:
        """Run one completion call to its terminal state.

        Exactly one of ``on_complete`` / ``on_error`` fires. Cancelling the
        awaiting task aborts the call: the upstream reader is closed and no
        retry or persistence happens afterwards.

        Args:
            request: The completion request.
            auth: Caller identity; anonymous when omitted.
            conversation_id: Conversation to append the answer to. Created
                on completion when None or missing.
            on_delta: Receives each content delta as soon as it is decoded.
            on_complete: Receives the final result.
            on_error: Receives the terminal error.
            request_id: Correlation id; generated when omitted.

        Returns:
            The finished ``RelayResult``.

        Raises:
            RelayError: The terminal error, after ``on_error`` has fired.
        """
        call = RelayCall(
            request_id=request_id or generate_request_id(),
            request=request,
            auth=auth or AuthContext(),
            conversation_id=conversation_id,
            retry=self.retry_policy.new_state(),
        )
        logger.info(
            "relay_call_start",
            request_id=call.request_id,
            stream=request.stream,
            message_count=len(request.messages) if isinstance(request.messages, list) else 0,
            conversation_id=conversation_id,
        )

        try:
            result = await self._execute(call, on_delta)
        except RelayError as error:
            call.state = RelayState.FAILED
            if error.request_id is None:
                error.request_id = call.request_id
            if call.content_emitted and not error.partial_content:
                error.partial_content = call.result.full_content
            logger.error(
                "relay_call_failed",
                request_id=call.request_id,
                code=error.code,
                status=error.status,
                attempts=call.attempts,
                partial_length=len(error.partial_content),
                error=error.message,
            )
            await _notify(on_error, error)
            raise
        except asyncio.CancelledError:
            logger.info(
                "relay_call_cancelled",
                request_id=call.request_id,
                state=call.state.value,
            )
            raise

        await _notify(on_complete, result)
        return result

    async def events(
        self,
        request: CompletionRequest,
        auth: AuthContext | None = None,
        conversation_id: str | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[RelayEvent]:
        """Run a call and yield its deltas followed by one terminal event.

        Closing the iterator early cancels the underlying call.
        """
        queue: asyncio.Queue[RelayEvent] = asyncio.Queue()
        request_id = request_id or generate_request_id()

        async def drive() -> None:
            try:
                result = await self.run(
                    request,
                    auth,
                    conversation_id=conversation_id,
                    on_delta=lambda text: queue.put_nowait(DeltaEvent(text)),
                    request_id=request_id,
                )
            except RelayError as error:
                queue.put_nowait(FailedEvent(error))
            except Exception as e:
                logger.exception("relay_call_crashed", request_id=request_id)
                queue.put_nowait(FailedEvent(RelayError(str(e), request_id=request_id)))
            else:
                queue.put_nowait(CompletedEvent(result))

        task = asyncio.create_task(drive())
        try:
            while True:
                event = await queue.get()
                yield event
                if not isinstance(event, DeltaEvent):
                    break
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    def model_for(self, request: CompletionRequest) -> str:
        """Model id the call will request upstream."""
        return self.builder.model_for(request)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _execute(self, call: RelayCall, on_delta: DeltaSink | None) -> RelayResult:
        messages = validate_messages(call.request.messages, call.request_id)
        request = dataclasses.replace(call.request, messages=messages)
        try:
            call.upstream = self.builder.build(request, call.auth)
        except ConfigurationError as error:
            error.request_id = call.request_id
            raise

        while True:
            call.state = RelayState.CONNECTING
            call.result = AggregatedResult()
            try:
                if request.stream:
                    await self._stream_attempt(call, on_delta)
                else:
                    await self._fetch_attempt(call)
                break
            except RelayError as error:
                if call.content_emitted or not self.retry_policy.is_retryable(error):
                    raise
                if not call.retry.can_retry():
                    raise self._exhausted(call, error) from error
                delay_ms = self.retry_policy.next_delay(call.retry.attempt)
                logger.warning(
                    "upstream_retry_scheduled",
                    request_id=call.request_id,
                    attempt=call.retry.attempt + 1,
                    max_attempts=call.retry.max_attempts,
                    status=error.status,
                    delay_ms=round(delay_ms, 1),
                    error=error.message,
                )
                call.retry.attempt += 1
                await self._sleep(delay_ms / 1000)

        return await self._complete(call, request)

    async def _stream_attempt(self, call: RelayCall, on_delta: DeltaSink | None) -> None:
        upstream = call.upstream
        assert upstream is not None
        logger.debug(
            "upstream_stream_request",
            request_id=call.request_id,
            attempt=call.attempts,
            model=upstream.model_id,
        )
        try:
            async with self._client.stream(
                "POST",
                upstream.path,
                json=upstream.payload,
                headers=upstream.headers,
            ) as response:
                await self._check_response(call, response)
                call.state = RelayState.STREAMING
                logger.info(
                    "upstream_stream_open",
                    request_id=call.request_id,
                    attempt=call.attempts,
                )
                try:
                    async with contextlib.aclosing(
                        iter_sse_payloads(response.aiter_bytes(), request_id=call.request_id)
                    ) as payloads:
                        async for payload in payloads:
                            if await self._handle_payload(call, payload, on_delta):
                                break
                except httpx.DecodingError as e:
                    raise self._decoding_failure(call, e) from e
                except httpx.RequestError as e:
                    raise self._read_failure(call, e) from e
        except httpx.DecodingError as e:
            raise self._decoding_failure(call, e) from e
        except httpx.RequestError as e:
            raise NetworkError(
                f"Upstream connection failed: {str(e) or type(e).__name__}",
                request_id=call.request_id,
            ) from e

    async def _fetch_attempt(self, call: RelayCall) -> None:
        upstream = call.upstream
        assert upstream is not None
        try:
            response = await self._client.post(
                upstream.path,
                json=upstream.payload,
                headers=upstream.headers,
            )
        except httpx.DecodingError as e:
            raise self._decoding_failure(call, e) from e
        except httpx.RequestError as e:
            raise NetworkError(
                f"Upstream connection failed: {str(e) or type(e).__name__}",
                request_id=call.request_id,
            ) from e

        await self._check_response(call, response)
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedUpstream(
                "Upstream returned an unparseable completion body",
                request_id=call.request_id,
                body=response.text[:500],
            ) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise MalformedUpstream(
                "Upstream completion is missing choices[0].message.content",
                request_id=call.request_id,
                body=response.text[:500],
            )

        call.raw_response = data
        call.result.append(content)
        call.result.usage = Usage.from_dict(data.get("usage"))
        call.result.completion_id = data.get("id")
        call.result.model = data.get("model")
        call.result.finish_reason = choices[0].get("finish_reason")

    async def _check_response(self, call: RelayCall, response: httpx.Response) -> None:
        if not response.is_success:
            body = (await response.aread()).decode("utf-8", errors="replace")
            raise self._status_error(call, response.status_code, body)

        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type.lower():
            body = (await response.aread()).decode("utf-8", errors="replace")
            raise MalformedUpstream(
                "Upstream returned an HTML page instead of a completion",
                request_id=call.request_id,
                status=response.status_code,
                body=body[:500],
            )

    async def _handle_payload(
        self, call: RelayCall, payload: str, on_delta: DeltaSink | None
    ) -> bool:
        """Apply one decoded event. Returns True when the stream is done."""
        extracted = extract_delta(payload)
        if isinstance(extracted, Done):
            logger.debug("upstream_stream_done", request_id=call.request_id)
            return True
        if isinstance(extracted, UpstreamFailure):
            raise self._stream_failure(call, extracted)

        info = extract_chunk_info(payload)
        aggregate = call.result
        aggregate.usage = info.usage or aggregate.usage
        aggregate.completion_id = aggregate.completion_id or info.completion_id
        aggregate.model = info.model or aggregate.model
        aggregate.finish_reason = info.finish_reason or aggregate.finish_reason

        if isinstance(extracted, Unparseable):
            if info.usage is None:
                logger.debug(
                    "stream_event_skipped",
                    request_id=call.request_id,
                    reason=extracted.reason,
                    payload=payload[:100],
                )
            return False

        assert isinstance(extracted, ContentDelta)
        if extracted.text:
            aggregate.append(extracted.text)
            call.content_emitted = True
            await _notify(on_delta, extracted.text)
        return False

    async def _complete(self, call: RelayCall, request: CompletionRequest) -> RelayResult:
        aggregate = call.result
        upstream = call.upstream
        assert upstream is not None

        if not aggregate.full_content.strip():
            raise EmptyCompletion(
                "Failed to get a response. Please try again.",
                request_id=call.request_id,
                attempts=call.attempts,
            )

        result = RelayResult(
            request_id=call.request_id,
            content=aggregate.full_content,
            model_id=upstream.model_id,
            usage=aggregate.usage,
            conversation_id=call.conversation_id,
            attempts=call.attempts,
            completion_id=aggregate.completion_id,
            finish_reason=aggregate.finish_reason,
            raw_response=call.raw_response,
        )

        if self.handoff is not None:
            record = CompletionRecord(
                request_id=call.request_id,
                content=aggregate.full_content,
                model_id=upstream.model_id,
                conversation_id=call.conversation_id,
                user_id=call.auth.user_id,
                usage=aggregate.usage,
                used_custom_key=upstream.used_custom_key,
            )
            prompt_text = "\n".join(m["content"] for m in request.messages)
            saved_conversation_id = await self.handoff.persist(record, prompt_text)
            if saved_conversation_id is not None:
                result.conversation_id = saved_conversation_id
                result.persisted = True

        call.state = RelayState.COMPLETED
        logger.info(
            "relay_call_completed",
            request_id=call.request_id,
            attempts=call.attempts,
            content_length=len(result.content),
            chunks=aggregate.chunk_count,
            persisted=result.persisted,
        )
        return result

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _status_error(self, call: RelayCall, status: int, body: str) -> RelayError:
        detail = body.strip()
        if looks_like_html(detail):
            detail = "HTML error page"
        else:
            with contextlib.suppress(ValueError, AttributeError, TypeError):
                parsed = json.loads(body)
                error_field = parsed.get("error")
                if isinstance(error_field, dict) and error_field.get("message"):
                    detail = str(error_field["message"])
                elif isinstance(error_field, str):
                    detail = error_field

        if status == 402 or is_quota_message(detail):
            return QuotaExceeded(
                detail or None,
                request_id=call.request_id,
                status=status,
                body=body[:500],
            )
        return UpstreamStatusError(
            f"Upstream API error: {status} - {detail[:200]}",
            request_id=call.request_id,
            status=status,
            body=body[:500],
        )

    def _stream_failure(self, call: RelayCall, failure: UpstreamFailure) -> RelayError:
        status = failure.code if isinstance(failure.code, int) else None
        if call.content_emitted:
            return StreamInterrupted(
                f"Stream interrupted: {failure.message}",
                request_id=call.request_id,
                status=status,
                partial_content=call.result.full_content,
                attempts=call.attempts,
            )
        if status == 402 or is_quota_message(failure.message):
            return QuotaExceeded(failure.message, request_id=call.request_id, status=status)
        return UpstreamStatusError(
            f"Upstream stream error: {failure.message}",
            request_id=call.request_id,
            status=status,
        )

    def _decoding_failure(self, call: RelayCall, error: httpx.DecodingError) -> RelayError:
        # Body does not match its declared content-encoding; terminal.
        return MalformedUpstream(
            f"Upstream body could not be decoded: {str(error) or type(error).__name__}",
            request_id=call.request_id,
            partial_content=call.result.full_content if call.content_emitted else "",
            attempts=call.attempts,
        )

    def _read_failure(self, call: RelayCall, error: httpx.RequestError) -> RelayError:
        reason = str(error) or type(error).__name__
        if call.content_emitted:
            return StreamInterrupted(
                f"Stream interrupted: {reason}",
                request_id=call.request_id,
                partial_content=call.result.full_content,
                attempts=call.attempts,
            )
        return NetworkError(
            f"Upstream stream failed before any content: {reason}",
            request_id=call.request_id,
        )

    def _exhausted(self, call: RelayCall, error: RelayError) -> RelayError:
        retries = call.retry.attempt
        return type(error)(
            f"Upstream request failed after {retries} retries: {error.message}",
            request_id=call.request_id,
            status=error.status,
            body=error.body,
            attempts=call.attempts,
        )
