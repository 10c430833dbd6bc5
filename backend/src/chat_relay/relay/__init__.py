"""Streaming completion relay: SSE decoding, retries, aggregation, persistence handoff."""

from chat_relay.relay.base import (
    AggregatedResult,
    AuthContext,
    CompletionRecord,
    PersistencePort,
    RelayResult,
    Usage,
)
from chat_relay.relay.completion import (
    CompletedEvent,
    CompletionRelay,
    DeltaEvent,
    FailedEvent,
    RelayState,
)
from chat_relay.relay.handoff import PersistenceHandoff
from chat_relay.relay.request import (
    CompletionRequest,
    OpenAICompatRequestBuilder,
    RequestBuilder,
    RequestOptions,
)
from chat_relay.relay.retry import RetryPolicy

__all__ = [
    "AggregatedResult",
    "AuthContext",
    "CompletedEvent",
    "CompletionRecord",
    "CompletionRelay",
    "CompletionRequest",
    "DeltaEvent",
    "FailedEvent",
    "OpenAICompatRequestBuilder",
    "PersistenceHandoff",
    "PersistencePort",
    "RelayResult",
    "RelayState",
    "RequestBuilder",
    "RequestOptions",
    "RetryPolicy",
    "Usage",
]
