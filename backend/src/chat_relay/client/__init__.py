"""Client-side stream consumption and message reconciliation."""

from chat_relay.client.reconciler import DisplayMessage, StreamAccumulator, StreamReconciler
from chat_relay.client.stream import ChatStreamClient, consume_passthrough

__all__ = [
    "ChatStreamClient",
    "DisplayMessage",
    "StreamAccumulator",
    "StreamReconciler",
    "consume_passthrough",
]
