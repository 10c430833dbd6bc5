"""Unit tests for retry classification and backoff."""

import random

import pytest

from chat_relay.relay.errors import (
    ConfigurationError,
    EmptyCompletion,
    MalformedUpstream,
    NetworkError,
    QuotaExceeded,
    RequestValidationError,
    StreamInterrupted,
    UpstreamStatusError,
)
from chat_relay.relay.retry import (
    MAX_DELAY_MS,
    RetryPolicy,
    RetryState,
    is_retryable,
    next_delay,
)


class TestIsRetryable:
    """Tests for is_retryable."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        """Should retry 429 and 5xx responses."""
        assert is_retryable(UpstreamStatusError("x", status=status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_terminal_statuses(self, status):
        """Should not retry other 4xx responses."""
        assert not is_retryable(UpstreamStatusError("x", status=status))

    def test_network_error_retryable(self):
        """Should retry failures without a status."""
        assert is_retryable(NetworkError("timeout"))

    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("no key"),
            EmptyCompletion("empty"),
            MalformedUpstream("html", status=200),
            QuotaExceeded(status=402),
            RequestValidationError("bad role"),
            StreamInterrupted("reset"),
        ],
    )
    def test_terminal_error_types(self, error):
        """Should never retry terminal error types."""
        assert not is_retryable(error)

    def test_malformed_without_status_not_retried(self):
        """Should not retry an HTML body even without a status."""
        assert not is_retryable(MalformedUpstream("html"))


class TestNextDelay:
    """Tests for next_delay."""

    def test_without_jitter_is_exponential(self):
        """Should double the delay for each attempt."""
        assert [next_delay(n, 1000, jitter=0) for n in range(4)] == [
            1000,
            2000,
            4000,
            8000,
        ]

    def test_jitter_bounds(self):
        """Should stay within [base * 2^n, base * 2^n * 1.3]."""
        rng = random.Random(42)
        for attempt in range(4):
            floor = 1000 * 2**attempt
            for _ in range(200):
                delay = next_delay(attempt, 1000, rng=rng)
                assert floor <= delay <= floor * 1.3

    def test_capped(self):
        """Should never exceed the maximum delay."""
        rng = random.Random(1)
        assert next_delay(10, 1000, rng=rng) == MAX_DELAY_MS
        assert next_delay(3, 1000, jitter=0, max_delay_ms=5000) == 5000

    def test_jitter_ratio_clamped(self):
        """Should clamp an oversized jitter ratio to 0.3."""
        rng = random.Random(3)
        for _ in range(100):
            assert next_delay(0, 100, jitter=5.0, rng=rng) <= 130


class TestRetryPolicy:
    """Tests for RetryPolicy and RetryState."""

    def test_new_state_is_independent(self):
        """Should hand every call its own state."""
        policy = RetryPolicy(max_attempts=2)
        first = policy.new_state()
        second = policy.new_state()
        first.attempt = 2
        assert not first.can_retry()
        assert second.can_retry()

    def test_can_retry_until_max(self):
        """Should allow exactly max_attempts retries."""
        state = RetryState(max_attempts=3)
        allowed = 0
        while state.can_retry():
            state.attempt += 1
            allowed += 1
        assert allowed == 3

    def test_zero_attempts(self):
        """Should allow no retries when max_attempts is 0."""
        assert not RetryPolicy(max_attempts=0).new_state().can_retry()

    def test_negative_attempts_rejected(self):
        """Should reject a negative retry budget."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=-1)

    def test_policy_delay_uses_settings(self):
        """Should apply the configured base and cap."""
        policy = RetryPolicy(base_delay_ms=10, jitter=0, max_delay_ms=35)
        assert [policy.next_delay(n) for n in range(4)] == [10, 20, 35, 35]
