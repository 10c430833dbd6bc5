"""Retry classification and exponential backoff for upstream calls."""

import random
from dataclasses import dataclass

from chat_relay.relay.errors import (
    ConfigurationError,
    EmptyCompletion,
    MalformedUpstream,
    QuotaExceeded,
    RequestValidationError,
    StreamInterrupted,
)

MAX_DELAY_MS = 30000.0
MAX_JITTER_RATIO = 0.3

# Failures that never succeed on a second try, whatever their status.
_TERMINAL_ERRORS = (
    ConfigurationError,
    EmptyCompletion,
    MalformedUpstream,
    QuotaExceeded,
    RequestValidationError,
    StreamInterrupted,
)


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed upstream call may be retried.

    Errors without an HTTP status (network failures, timeouts) are retryable,
    as are 429 and 5xx responses. Every other status is terminal.
    """
    if isinstance(error, _TERMINAL_ERRORS):
        return False
    status = getattr(error, "status", None)
    if status is None:
        return True
    return status == 429 or 500 <= status < 600


def next_delay(
    attempt: int,
    base_delay_ms: float,
    jitter: float = MAX_JITTER_RATIO,
    max_delay_ms: float = MAX_DELAY_MS,
    rng: random.Random | None = None,
) -> float:
    """Compute the wait before retry number ``attempt`` (0-indexed).

    The delay is ``base_delay_ms * 2**attempt`` plus up to ``jitter`` of
    itself, capped at ``max_delay_ms``. Jitter only ever lengthens the wait.

    Returns:
        Delay in milliseconds.
    """
    delay = base_delay_ms * (2**attempt)
    ratio = min(max(jitter, 0.0), MAX_JITTER_RATIO)
    if ratio:
        delay += delay * (rng or random).uniform(0, ratio)
    return min(delay, max_delay_ms)


@dataclass
class RetryState:
    """Retry bookkeeping for one relay call. Never shared across calls."""

    max_attempts: int = 3
    base_delay_ms: float = 1000
    attempt: int = 0

    def can_retry(self) -> bool:
        return self.attempt < self.max_attempts


class RetryPolicy:
    """Retry settings shared by relay calls; state lives in ``RetryState``."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: float = 1000,
        jitter: float = MAX_JITTER_RATIO,
        max_delay_ms: float = MAX_DELAY_MS,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.jitter = jitter
        self.max_delay_ms = max_delay_ms
        self.rng = rng

    def new_state(self) -> RetryState:
        return RetryState(max_attempts=self.max_attempts, base_delay_ms=self.base_delay_ms)

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable(error)

    def next_delay(self, attempt: int) -> float:
        return next_delay(
            attempt,
            self.base_delay_ms,
            jitter=self.jitter,
            max_delay_ms=self.max_delay_ms,
            rng=self.rng,
        )
