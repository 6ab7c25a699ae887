"""Tests for CircuitBreaker transitions and CircuitBreakerRegistry."""

from __future__ import annotations

import asyncio

import pytest

from orchestrator.exceptions import CircuitOpenError, InvalidConfigError, OperationCancelledError, ProviderError
from orchestrator.resilience.circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from orchestrator.types.errors import ErrorKind


async def _fail():
    raise ProviderError("503", kind=ErrorKind.TRANSIENT_API_ERROR)


async def _ok():
    return "ok"


def _open_breaker(clock, threshold=3, reset_ms=1000):
    breaker = CircuitBreaker("gemini:overview", failure_threshold=threshold, reset_timeout_ms=reset_ms, clock=clock)
    for _ in range(threshold):
        breaker.record_failure()
    return breaker


class TestCircuitBreakerTransitions:
    """Tests for closed/open/half-open transitions."""

    def test_invalid_threshold(self):
        with pytest.raises(InvalidConfigError):
            CircuitBreaker("x", failure_threshold=0)

    def test_opens_at_threshold(self, fake_clock):
        """Test the breaker opens after failure_threshold consecutive failures."""
        breaker = CircuitBreaker("op", failure_threshold=3, clock=fake_clock)

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert not breaker.allow_request()

    def test_success_resets_consecutive_count(self, fake_clock):
        """Test that a success in between keeps the breaker closed."""
        breaker = CircuitBreaker("op", failure_threshold=3, clock=fake_clock)

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 2

    def test_half_open_after_cooldown(self, fake_clock):
        """Test open -> half-open once the reset timeout has elapsed."""
        breaker = _open_breaker(fake_clock, reset_ms=1000)

        fake_clock.advance_ms(1000)
        assert breaker.state is CircuitState.OPEN

        fake_clock.advance_ms(1)
        assert breaker.state is CircuitState.HALF_OPEN

    def test_half_open_admits_single_trial(self, fake_clock):
        """Test only one caller is admitted while the trial is in flight."""
        breaker = _open_breaker(fake_clock)
        fake_clock.advance_ms(1500)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_trial_success_closes(self, fake_clock):
        breaker = _open_breaker(fake_clock)
        fake_clock.advance_ms(1500)
        breaker.allow_request()

        breaker.record_success()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_trial_failure_reopens(self, fake_clock):
        """Test a failed trial restarts the cool-down."""
        breaker = _open_breaker(fake_clock)
        fake_clock.advance_ms(1500)
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after_s() == pytest.approx(1.0)

    def test_retry_after_counts_down(self, fake_clock):
        breaker = _open_breaker(fake_clock, reset_ms=1000)
        fake_clock.advance_ms(400)

        assert breaker.retry_after_s() == pytest.approx(0.6)

    def test_reset(self, fake_clock):
        breaker = _open_breaker(fake_clock)

        breaker.reset()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot()["failure_count"] == 0


class TestCircuitBreakerCall:
    """Tests for CircuitBreaker.call()."""

    @pytest.mark.anyio
    async def test_open_breaker_rejects_without_calling(self, fake_clock):
        """Test an open breaker raises CircuitOpenError and skips the operation."""
        breaker = _open_breaker(fake_clock)
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(operation)

        assert calls == []
        assert exc_info.value.operation == "gemini:overview"
        assert exc_info.value.retry_after_s == pytest.approx(1.0)

    @pytest.mark.anyio
    async def test_failures_counted_through_call(self, fake_clock):
        breaker = CircuitBreaker("op", failure_threshold=2, clock=fake_clock)

        for _ in range(2):
            with pytest.raises(ProviderError):
                await breaker.call(_fail)

        assert breaker.state is CircuitState.OPEN

    @pytest.mark.anyio
    async def test_request_errors_count_as_success(self, fake_clock):
        """Test request-level errors do not trip the breaker."""
        breaker = CircuitBreaker("op", failure_threshold=1, clock=fake_clock)

        async def rejected():
            raise ProviderError("blocked", kind=ErrorKind.CONTENT_FILTER)

        with pytest.raises(ProviderError):
            await breaker.call(rejected)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.anyio
    async def test_half_open_trial_success_through_call(self, fake_clock):
        breaker = _open_breaker(fake_clock)
        fake_clock.advance_ms(1500)

        assert await breaker.call(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.anyio
    async def test_cancellation_releases_trial(self, fake_clock):
        """Test a cancelled trial lets the next caller try again."""
        breaker = _open_breaker(fake_clock)
        fake_clock.advance_ms(1500)

        async def cancelled():
            raise OperationCancelledError("stop")

        with pytest.raises(OperationCancelledError):
            await breaker.call(cancelled)

        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request() is True


class TestCircuitBreakerStaleOutcomes:
    """Tests that an outcome only counts in the state its call was admitted in."""

    @pytest.mark.anyio
    async def test_slow_success_keeps_breaker_open(self, fake_clock):
        """Test a success that started before the breaker opened does not close it."""
        breaker = CircuitBreaker("op", failure_threshold=1, reset_timeout_ms=1000, clock=fake_clock)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow():
            started.set()
            await release.wait()
            return "late"

        slow_call = asyncio.create_task(breaker.call(slow))
        await started.wait()

        with pytest.raises(ProviderError):
            await breaker.call(_fail)
        assert breaker.state is CircuitState.OPEN

        release.set()
        assert await slow_call == "late"

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after_s() == pytest.approx(1.0)
        assert not breaker.allow_request()

    @pytest.mark.anyio
    async def test_slow_failure_after_trial_success_is_ignored(self, fake_clock):
        """Test a failure admitted before the breaker opened does not count after it closes again."""
        breaker = CircuitBreaker("op", failure_threshold=1, reset_timeout_ms=1000, clock=fake_clock)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_failure():
            started.set()
            await release.wait()
            raise ProviderError("503", kind=ErrorKind.TRANSIENT_API_ERROR)

        slow_call = asyncio.create_task(breaker.call(slow_failure))
        await started.wait()

        with pytest.raises(ProviderError):
            await breaker.call(_fail)
        fake_clock.advance_ms(1500)
        assert await breaker.call(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED

        release.set()
        with pytest.raises(ProviderError):
            await slow_call

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_success_ignored_while_open(self, fake_clock):
        breaker = _open_breaker(fake_clock)

        breaker.record_success()

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after_s() == pytest.approx(1.0)

    def test_half_open_outcome_needs_trial(self, fake_clock):
        """Test outcomes in half-open state are ignored unless a trial was admitted."""
        breaker = _open_breaker(fake_clock)
        fake_clock.advance_ms(1500)

        breaker.record_success()
        assert breaker.state is CircuitState.HALF_OPEN

        breaker.record_failure()
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request() is True


class TestCircuitBreakerRegistry:
    """Tests for CircuitBreakerRegistry."""

    def test_operation_key(self):
        assert CircuitBreakerRegistry.operation_key("gemini", "overview") == "gemini:overview"
        assert CircuitBreakerRegistry.operation_key("gemini") == "gemini"

    def test_same_key_shares_breaker(self, fake_clock):
        registry = CircuitBreakerRegistry(failure_threshold=2, clock=fake_clock)

        first = registry.get("gemini:overview")

        assert registry.get("gemini:overview") is first
        assert registry.get("gemini:themes") is not first
        assert first.failure_threshold == 2

    def test_states_and_reset_all(self, fake_clock):
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=fake_clock)
        registry.get("a").record_failure()
        registry.get("b")

        assert registry.states() == {"a": "open", "b": "closed"}

        registry.reset_all()

        assert registry.states() == {"a": "closed", "b": "closed"}
