"""Tests for backoff computation and RetryExecutor."""

from __future__ import annotations

import random
from types import SimpleNamespace

import pytest

from orchestrator.cancellation import CancellationToken
from orchestrator.exceptions import (
    CircuitOpenError,
    InvalidConfigError,
    OperationCancelledError,
    ProviderError,
    ProviderRateLimitError,
)
from orchestrator.resilience.retry import (
    JitteredBackoff,
    RetryConfig,
    RetryExecutor,
    base_delay,
    classify_error,
    compute_backoff,
    is_retryable,
)
from orchestrator.types.errors import ErrorKind


class FlakyOperation:
    """Raises the queued errors, then returns ``value``."""

    def __init__(self, errors, value="done"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestBackoff:
    """Tests for base_delay() and compute_backoff()."""

    def test_base_delay_grows_and_caps(self):
        """Test exponential growth bounded by max_delay_ms."""
        config = RetryConfig(initial_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2.0)

        assert [base_delay(n, config) for n in range(1, 7)] == [1000, 2000, 4000, 8000, 16000, 30000]

    def test_jittered_delay_within_bounds(self):
        """Test every jittered delay stays within +/-25% of the base delay."""
        config = RetryConfig(initial_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2.0)
        rng = random.Random(7)

        for attempt in range(1, 10):
            base = base_delay(attempt, config)
            for _ in range(200):
                delay = compute_backoff(attempt, config, rng)
                assert 0.75 * base <= delay <= 1.25 * base

    def test_fifth_attempt_range(self):
        """Test the fifth attempt waits between 12 and 20 seconds."""
        config = RetryConfig(initial_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2.0)
        rng = random.Random(0)

        delays = [compute_backoff(5, config, rng) for _ in range(500)]

        assert all(12000 <= delay <= 20000 for delay in delays)

    def test_zero_jitter_is_deterministic(self):
        """Test that jitter=0 returns the base delay exactly."""
        config = RetryConfig(initial_delay_ms=500, backoff_multiplier=3.0, jitter=0.0)

        assert compute_backoff(3, config) == 4500


class TestRetryConfig:
    """Tests for RetryConfig validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"initial_delay_ms": -5},
            {"backoff_multiplier": 0.5},
            {"jitter": 1.0},
            {"jitter": -0.1},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        """Test invalid retry settings raise InvalidConfigError."""
        with pytest.raises(InvalidConfigError):
            RetryConfig(**kwargs).validate()

    def test_executor_validates_config(self):
        """Test RetryExecutor refuses an invalid config."""
        with pytest.raises(InvalidConfigError):
            RetryExecutor(RetryConfig(max_retries=-2))


class TestErrorClassification:
    """Tests for classify_error() and is_retryable()."""

    def test_provider_error_kind(self):
        assert classify_error(ProviderRateLimitError("429")) is ErrorKind.RATE_LIMIT
        assert classify_error(ProviderError("bad", kind=ErrorKind.CONTENT_FILTER)) is ErrorKind.CONTENT_FILTER

    def test_builtin_errors(self):
        assert classify_error(TimeoutError()) is ErrorKind.TIMEOUT
        assert classify_error(ConnectionResetError()) is ErrorKind.NETWORK
        assert classify_error(KeyError("x")) is ErrorKind.UNKNOWN

    def test_circuit_open_not_retryable(self):
        """Test that an open circuit is never retried in place."""
        assert not is_retryable(CircuitOpenError("gemini:overview", 10.0))
        assert is_retryable(ProviderError("503", kind=ErrorKind.TRANSIENT_API_ERROR))
        assert not is_retryable(ProviderError("401", kind=ErrorKind.AUTHENTICATION))


class TestRetryExecutor:
    """Tests for RetryExecutor.execute()."""

    @pytest.mark.anyio
    async def test_success_first_attempt(self, recording_sleep):
        """Test a successful operation runs once without sleeping."""
        operation = FlakyOperation([])
        executor = RetryExecutor(RetryConfig(max_retries=3), sleep=recording_sleep)

        result = await executor.execute(operation)

        assert result.success
        assert result.value == "done"
        assert result.attempts == 1
        assert recording_sleep.calls == []

    @pytest.mark.anyio
    async def test_recovers_after_transient_failures(self, recording_sleep):
        """Test retryable failures are retried with growing delays."""
        operation = FlakyOperation([ProviderRateLimitError("429"), ProviderError("503", kind=ErrorKind.NETWORK)])
        executor = RetryExecutor(
            RetryConfig(max_retries=3, initial_delay_ms=1000, jitter=0.0),
            sleep=recording_sleep,
        )

        result = await executor.execute(operation)

        assert result.success
        assert result.attempts == 3
        assert recording_sleep.calls == [1.0, 2.0]
        assert result.total_delay_ms == 3000
        assert [entry.error_kind for entry in result.log] == [ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, None]

    @pytest.mark.anyio
    async def test_gives_up_after_max_attempts(self, recording_sleep):
        """Test at most max_retries + 1 invocations."""
        operation = FlakyOperation([ProviderRateLimitError("429")] * 10)
        executor = RetryExecutor(RetryConfig(max_retries=2), sleep=recording_sleep, rng=random.Random(1))

        result = await executor.execute(operation)

        assert not result.success
        assert operation.calls == 3
        assert result.attempts == 3
        assert len(recording_sleep.calls) == 2
        assert result.error_kind is ErrorKind.RATE_LIMIT
        assert result.log[-1].delay_ms == 0.0

    @pytest.mark.anyio
    async def test_terminal_error_not_retried(self, recording_sleep):
        """Test request-level errors stop immediately."""
        operation = FlakyOperation([ProviderError("too long", kind=ErrorKind.CONTEXT_LENGTH_EXCEEDED)])
        executor = RetryExecutor(RetryConfig(max_retries=3), sleep=recording_sleep)

        result = await executor.execute(operation)

        assert not result.success
        assert operation.calls == 1
        assert recording_sleep.calls == []
        assert result.error_kind is ErrorKind.CONTEXT_LENGTH_EXCEEDED

    @pytest.mark.anyio
    async def test_authentication_not_retried(self, recording_sleep):
        """Test authentication failures are not retried against the same provider."""
        operation = FlakyOperation([ProviderError("bad key", kind=ErrorKind.AUTHENTICATION)])
        executor = RetryExecutor(RetryConfig(max_retries=3), sleep=recording_sleep)

        result = await executor.execute(operation)

        assert operation.calls == 1
        assert result.error_kind is ErrorKind.AUTHENTICATION

    @pytest.mark.anyio
    async def test_cancelled_before_attempt(self, recording_sleep):
        """Test a fired token prevents any attempt."""
        token = CancellationToken()
        token.cancel("stop")
        operation = FlakyOperation([])
        executor = RetryExecutor(sleep=recording_sleep)

        with pytest.raises(OperationCancelledError):
            await executor.execute(operation, token=token)

        assert operation.calls == 0

    @pytest.mark.anyio
    async def test_cancellation_during_backoff(self):
        """Test cancellation aborts the backoff wait."""
        token = CancellationToken()

        async def operation():
            token.cancel("shutdown")
            raise ProviderRateLimitError("429")

        executor = RetryExecutor(RetryConfig(max_retries=3, initial_delay_ms=60_000))

        with pytest.raises(OperationCancelledError):
            await executor.execute(operation, token=token)

    @pytest.mark.anyio
    async def test_connection_errors_exhaust_into_result(self, recording_sleep):
        """Test a runtime connection error is retried and the last one is returned, not raised."""
        operation = FlakyOperation([ConnectionResetError("reset")] * 5)
        executor = RetryExecutor(RetryConfig(max_retries=1, jitter=0.0, initial_delay_ms=250), sleep=recording_sleep)

        result = await executor.execute(operation, operation_name="gemini")

        assert not result.success
        assert isinstance(result.error, ConnectionResetError)
        assert result.error_kind is ErrorKind.NETWORK
        assert result.attempts == 2
        assert result.total_delay_ms == 250
        assert [entry.delay_ms for entry in result.log] == [250, 0.0]


class TestJitteredBackoff:
    """Tests for the tenacity wait strategy."""

    def test_wait_follows_attempt_number(self):
        config = RetryConfig(initial_delay_ms=1000, max_delay_ms=30000, jitter=0.0)
        wait = JitteredBackoff(config)

        assert wait(SimpleNamespace(attempt_number=1)) == 1.0
        assert wait(SimpleNamespace(attempt_number=3)) == 4.0
        assert wait(SimpleNamespace(attempt_number=10)) == 30.0

    def test_wait_is_jittered(self):
        config = RetryConfig(initial_delay_ms=1000, jitter=0.25)
        wait = JitteredBackoff(config, rng=random.Random(3))

        delays = {wait(SimpleNamespace(attempt_number=2)) for _ in range(50)}

        assert len(delays) > 1
        assert all(1.5 <= delay <= 2.5 for delay in delays)
