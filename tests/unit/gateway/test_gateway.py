"""Tests for ModelGateway composition of retry, breaker and failover."""

from __future__ import annotations

import asyncio
import random

import pytest

from orchestrator.cancellation import CancellationToken
from orchestrator.exceptions import OperationCancelledError
from orchestrator.gateway import ModelGateway
from orchestrator.resilience.circuit import CircuitBreakerRegistry, CircuitState
from orchestrator.resilience.fallback import FallbackConfig
from orchestrator.resilience.priority import ProviderPriorityManager
from orchestrator.resilience.retry import RetryConfig
from orchestrator.tracking.progress import JobProgress
from orchestrator.tracking.usage import UsageLedger
from orchestrator.types.errors import ErrorKind
from orchestrator.types.messages import ModelRequest, ProviderResult


class SlowProvider:
    """Provider that never answers within a short timeout."""

    id = "slow"

    def __init__(self, delay_s: float = 5.0):
        self.delay_s = delay_s

    def is_usable(self) -> bool:
        return True

    async def invoke(self, request):
        await asyncio.sleep(self.delay_s)
        raise AssertionError("timeout should have fired first")


def _gateway(providers, sleep, **kwargs):
    kwargs.setdefault("retry_config", RetryConfig(max_retries=0))
    return ModelGateway(providers, sleep=sleep, rng=random.Random(0), **kwargs)


REQUEST = ModelRequest(prompt="analyze these pages")


class TestModelGateway:
    """Tests for ModelGateway.invoke()."""

    @pytest.mark.anyio
    async def test_success_records_usage(self, make_provider, recording_sleep):
        ledger = UsageLedger()
        gateway = _gateway([make_provider("gemini", ["answer"])], recording_sleep, ledger=ledger)

        result = await gateway.invoke(REQUEST, stage_id="overview")

        assert result.success
        assert result.value.text == "answer"
        usage = ledger.snapshot()
        assert usage.prompt_tokens == 100
        assert usage.completion_tokens == 50
        assert usage.by_provider["gemini"].calls == 1

    @pytest.mark.anyio
    async def test_failed_call_records_no_usage(self, make_provider, rate_limited, recording_sleep):
        ledger = UsageLedger()
        gateway = _gateway([make_provider("gemini", [rate_limited])], recording_sleep, ledger=ledger)

        result = await gateway.invoke(REQUEST)

        assert not result.success
        assert ledger.snapshot().total_tokens == 0

    @pytest.mark.anyio
    async def test_failover_updates_priorities(self, make_provider, rate_limited, recording_sleep):
        """Test a rate-limited provider is penalized and the fallback rewarded."""
        priorities = ProviderPriorityManager()
        gemini = make_provider("gemini", [rate_limited])
        openai = make_provider("openai", ["ok"])
        gateway = _gateway([gemini, openai], recording_sleep, priorities=priorities)

        result = await gateway.invoke(REQUEST, stage_id="overview")

        assert result.provider_used == "openai"
        assert priorities.success_rate("gemini") == pytest.approx(0.9)
        assert priorities.success_rate("openai") == 1.0
        assert [p.id for p in gateway.ranked_providers()] == ["openai", "gemini"]

    @pytest.mark.anyio
    async def test_request_errors_do_not_penalize(self, make_provider, recording_sleep):
        priorities = ProviderPriorityManager()
        blocked = ProviderResult.error(ErrorKind.CONTENT_FILTER, "blocked")
        gateway = _gateway([make_provider("gemini", [blocked])], recording_sleep, priorities=priorities)

        result = await gateway.invoke(REQUEST)

        assert result.error_kind is ErrorKind.CONTENT_FILTER
        assert priorities.success_rate("gemini") == 1.0

    @pytest.mark.anyio
    async def test_open_circuit_skips_provider(self, make_provider, rate_limited, recording_sleep, fake_clock):
        """Test an open breaker short-circuits the provider on the next call."""
        priorities = ProviderPriorityManager()
        gemini = make_provider("gemini", [rate_limited])
        openai = make_provider("openai", ["ok"])
        priorities.register(gemini, priority=10.0)
        breakers = CircuitBreakerRegistry(failure_threshold=1, clock=fake_clock)
        gateway = _gateway([gemini, openai], recording_sleep, priorities=priorities, breakers=breakers)

        first = await gateway.invoke(REQUEST, stage_id="overview")
        second = await gateway.invoke(REQUEST, stage_id="overview")

        assert first.provider_used == "openai"
        assert second.provider_used == "openai"
        assert gemini.calls == 1
        assert "Circuit breaker is open" in second.history[0].error
        assert breakers.get("gemini:overview").state is CircuitState.OPEN

    @pytest.mark.anyio
    async def test_breakers_are_per_stage(self, make_provider, rate_limited, recording_sleep, fake_clock):
        gemini = make_provider("gemini", [rate_limited])
        breakers = CircuitBreakerRegistry(failure_threshold=1, clock=fake_clock)
        gateway = _gateway([gemini], recording_sleep, breakers=breakers)

        await gateway.invoke(REQUEST, stage_id="overview")
        await gateway.invoke(REQUEST, stage_id="themes")

        assert gemini.calls == 2
        assert breakers.states() == {"gemini:overview": "open", "gemini:themes": "open"}

    @pytest.mark.anyio
    async def test_request_timeout(self, recording_sleep):
        """Test a slow provider fails with a timeout error kind."""
        gateway = _gateway([SlowProvider()], recording_sleep, request_timeout_s=0.01)

        result = await gateway.invoke(REQUEST)

        assert not result.success
        assert result.error_kind is ErrorKind.TIMEOUT

    @pytest.mark.anyio
    async def test_cancellation_propagates(self, make_provider, recording_sleep):
        token = CancellationToken()
        token.cancel("stop")
        gateway = _gateway([make_provider("gemini")], recording_sleep)

        with pytest.raises(OperationCancelledError):
            await gateway.invoke(REQUEST, token=token)

    @pytest.mark.anyio
    async def test_progress_counts_retries_and_switches(self, make_provider, rate_limited, recording_sleep):
        progress = JobProgress(total_batches=1)
        gateway = _gateway(
            [make_provider("gemini", [rate_limited]), make_provider("openai", ["ok"])],
            recording_sleep,
            retry_config=RetryConfig(max_retries=1),
            fallback_config=FallbackConfig(max_switches=1),
        )
        gateway.progress = progress

        await gateway.invoke(REQUEST)

        assert progress.retries == 1
        assert progress.fallback_switches == 1

    @pytest.mark.anyio
    async def test_attempts_reported_as_they_end(self, make_provider, rate_limited, recording_sleep):
        gateway = _gateway(
            [make_provider("gemini", [rate_limited]), make_provider("openai", ["ok"])],
            recording_sleep,
            fallback_config=FallbackConfig(max_switches=1),
        )
        seen = []

        result = await gateway.invoke(REQUEST, on_attempt=seen.append)

        assert tuple(seen) == result.history
        assert [attempt.provider_id for attempt in seen] == ["gemini", "openai"]


class TestCallBudget:
    """Tests for ModelGateway.call_budget_s()."""

    def test_covers_every_attempt_and_backoff(self, make_provider, recording_sleep):
        gateway = _gateway(
            [make_provider("gemini"), make_provider("openai")],
            recording_sleep,
            retry_config=RetryConfig(max_retries=2, initial_delay_ms=1000, backoff_multiplier=2.0, jitter=0.25),
            fallback_config=FallbackConfig(max_switches=1),
            request_timeout_s=10,
        )

        # 2 providers x (3 attempts x 10s + (1s + 2s) x 1.25)
        assert gateway.call_budget_s() == pytest.approx(67.5)

    def test_single_provider_never_switches(self, make_provider, recording_sleep):
        gateway = _gateway(
            [make_provider("gemini")],
            recording_sleep,
            retry_config=RetryConfig(max_retries=0),
            fallback_config=FallbackConfig(max_switches=2),
            request_timeout_s=90,
        )

        assert gateway.call_budget_s() == pytest.approx(90)

    def test_default_stage_timeout_raised_to_budget(self, make_provider, recording_sleep):
        """Test the default 120s stage timeout no longer cuts the default retry chain short."""
        from orchestrator.stages.analysis import make_analysis_stage  # noqa: PLC0415

        gateway = ModelGateway([make_provider("gemini"), make_provider("openai")], sleep=recording_sleep)

        stage = make_analysis_stage("overview", gateway)

        assert gateway.call_budget_s() > 120
        assert stage.timeout_s == pytest.approx(gateway.call_budget_s())
