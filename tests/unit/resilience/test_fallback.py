"""Tests for FallbackCoordinator switching policy."""

from __future__ import annotations

import pytest

from orchestrator.exceptions import CircuitOpenError, InvalidConfigError, ProviderError
from orchestrator.resilience.fallback import FallbackConfig, FallbackCoordinator
from orchestrator.resilience.retry import RetryConfig, RetryExecutor
from orchestrator.types.errors import ErrorKind
from orchestrator.types.messages import ModelRequest, ProviderResult


async def call_provider(provider):
    """Invoke a provider and raise its failure, as the gateway does."""
    result = await provider.invoke(ModelRequest(prompt="analyze"))
    if not result.ok:
        raise ProviderError.from_failure(result.failure)
    return result.response


def _coordinator(providers, sleep, max_retries=0, **config):
    executor = RetryExecutor(RetryConfig(max_retries=max_retries), sleep=sleep)
    return FallbackCoordinator(providers, FallbackConfig(**config), executor)


class TestFallbackConfig:
    def test_negative_switches_rejected(self):
        with pytest.raises(InvalidConfigError):
            FallbackConfig(max_switches=-1).validate()


class TestFallbackCoordinator:
    """Tests for FallbackCoordinator.execute()."""

    @pytest.mark.anyio
    async def test_first_provider_success(self, make_provider, recording_sleep):
        gemini = make_provider("gemini", ["result"])
        openai = make_provider("openai")

        result = await _coordinator([gemini, openai], recording_sleep).execute(call_provider)

        assert result.success
        assert result.value.text == "result"
        assert result.provider_used == "gemini"
        assert result.switches == 0
        assert openai.calls == 0

    @pytest.mark.anyio
    async def test_all_providers_rate_limited(self, make_provider, rate_limited, recording_sleep):
        """Test three rate-limited providers are tried in order with two switches."""
        providers = [make_provider(pid, [rate_limited]) for pid in ("gemini", "openai", "anthropic")]

        result = await _coordinator(providers, recording_sleep, max_switches=2).execute(call_provider)

        assert not result.success
        assert result.switches == 2
        assert [attempt.provider_id for attempt in result.history] == ["gemini", "openai", "anthropic"]
        assert all(attempt.error_kind is ErrorKind.RATE_LIMIT for attempt in result.history)
        assert result.error_kind is ErrorKind.RATE_LIMIT

    @pytest.mark.anyio
    async def test_retries_exhausted_before_switch(self, make_provider, rate_limited, recording_sleep):
        """Test each provider spends its retries before the switch."""
        gemini = make_provider("gemini", [rate_limited])
        openai = make_provider("openai", ["ok"])

        result = await _coordinator([gemini, openai], recording_sleep, max_retries=2).execute(call_provider)

        assert result.success
        assert result.provider_used == "openai"
        assert gemini.calls == 3
        assert result.history[0].attempts == 3
        assert result.total_attempts == 4
        assert len(recording_sleep.calls) == 2

    @pytest.mark.anyio
    async def test_switch_budget_respected(self, make_provider, rate_limited, recording_sleep):
        """Test no more than max_switches switches happen."""
        providers = [make_provider(f"p{i}", [rate_limited]) for i in range(5)]

        result = await _coordinator(providers, recording_sleep, max_switches=1).execute(call_provider)

        assert result.switches == 1
        assert len(result.history) == 2
        assert providers[2].calls == 0

    @pytest.mark.anyio
    async def test_unusable_providers_skipped(self, make_provider, rate_limited, recording_sleep):
        """Test providers reporting is_usable() == False are never invoked."""
        missing_key = make_provider("gemini", ["unused"], usable=False)
        openai = make_provider("openai", [rate_limited])
        anthropic = make_provider("anthropic", ["ok"])

        result = await _coordinator([missing_key, openai, anthropic], recording_sleep).execute(call_provider)

        assert result.success
        assert result.provider_used == "anthropic"
        assert missing_key.calls == 0

    @pytest.mark.anyio
    async def test_no_usable_provider(self, make_provider, recording_sleep):
        providers = [make_provider("gemini", usable=False)]

        result = await _coordinator(providers, recording_sleep).execute(call_provider)

        assert not result.success
        assert result.history == ()
        assert "No usable provider" in str(result.error)

    @pytest.mark.anyio
    async def test_request_errors_never_switch(self, make_provider, recording_sleep):
        """Test a content-filter rejection stays on the same provider."""
        blocked = ProviderResult.error(ErrorKind.CONTENT_FILTER, "blocked")
        gemini = make_provider("gemini", [blocked])
        openai = make_provider("openai", ["ok"])

        result = await _coordinator([gemini, openai], recording_sleep, switch_on_error=True).execute(call_provider)

        assert not result.success
        assert result.switches == 0
        assert openai.calls == 0
        assert result.error_kind is ErrorKind.CONTENT_FILTER

    @pytest.mark.anyio
    async def test_authentication_always_switches(self, make_provider, recording_sleep):
        auth = ProviderResult.error(ErrorKind.AUTHENTICATION, "invalid key")
        gemini = make_provider("gemini", [auth])
        openai = make_provider("openai", ["ok"])

        result = await _coordinator(
            [gemini, openai], recording_sleep, switch_on_rate_limit=False, switch_on_error=False
        ).execute(call_provider)

        assert result.success
        assert result.provider_used == "openai"
        assert gemini.calls == 1

    @pytest.mark.anyio
    async def test_rate_limit_without_switching(self, make_provider, rate_limited, recording_sleep):
        gemini = make_provider("gemini", [rate_limited])
        openai = make_provider("openai", ["ok"])

        result = await _coordinator([gemini, openai], recording_sleep, switch_on_rate_limit=False).execute(
            call_provider
        )

        assert not result.success
        assert openai.calls == 0

    @pytest.mark.anyio
    async def test_network_error_switches_only_with_switch_on_error(self, make_provider, recording_sleep):
        down = ProviderResult.error(ErrorKind.NETWORK, "connection reset")

        strict = await _coordinator(
            [make_provider("gemini", [down]), make_provider("openai", ["ok"])], recording_sleep
        ).execute(call_provider)
        lenient = await _coordinator(
            [make_provider("gemini", [down]), make_provider("openai", ["ok"])], recording_sleep, switch_on_error=True
        ).execute(call_provider)

        assert not strict.success
        assert lenient.success
        assert lenient.provider_used == "openai"

    def test_should_switch_on_open_circuit(self):
        coordinator = FallbackCoordinator([], FallbackConfig(switch_on_rate_limit=True))

        assert coordinator.should_switch(CircuitOpenError("gemini:overview", 5.0))
        assert not coordinator.should_switch(None)
