"""Resilient model calls for analysis stages.

``ModelGateway.invoke`` composes the resilience components around one
request:

    FallbackCoordinator            (providers ranked by ProviderPriorityManager)
      -> RetryExecutor             (per provider)
        -> CircuitBreaker          (per provider and stage)
          -> request timeout
            -> ModelProvider.invoke

Successful calls are reported to the ``UsageLedger``; every provider attempt
updates the priority manager. The breaker registry and the priority manager
may be shared between jobs; the ledger and progress belong to one job.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from orchestrator.constants import DEFAULT_REQUEST_TIMEOUT_S
from orchestrator.exceptions import ProviderError, ProviderTimeoutError
from orchestrator.resilience.circuit import CircuitBreakerRegistry
from orchestrator.resilience.fallback import FallbackConfig, FallbackCoordinator, FallbackResult, ProviderAttempt
from orchestrator.resilience.priority import ProviderPriorityManager
from orchestrator.resilience.retry import RetryConfig, RetryExecutor, SleepFunc, base_delay
from orchestrator.tracking.usage import UsageLedger
from orchestrator.types.interfaces import ModelProvider
from orchestrator.types.messages import ModelRequest, ModelResponse

if TYPE_CHECKING:
    from orchestrator.cancellation import CancellationToken
    from orchestrator.tracking.progress import JobProgress

logger = logging.getLogger(__name__)

__all__ = ["ModelGateway"]


class ModelGateway:
    """Entry point for every provider call made by a job.

    Attributes:
        providers: Providers available to this gateway
        priorities: Shared provider ranking
        breakers: Shared circuit breakers
        ledger: Usage ledger of the job
        request_timeout_s: Timeout of a single provider request

    Example:
        >>> gateway = ModelGateway([gemini, openai], ledger=UsageLedger())
        >>> result = await gateway.invoke(ModelRequest(prompt="..."), stage_id="overview")
        >>> if result.success:
        ...     print(result.value.text, result.provider_used)
    """

    def __init__(
        self,
        providers: Sequence[ModelProvider],
        priorities: ProviderPriorityManager | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        ledger: UsageLedger | None = None,
        retry_config: RetryConfig | None = None,
        fallback_config: FallbackConfig | None = None,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
    ):
        self.providers = list(providers)
        self.priorities = priorities or ProviderPriorityManager()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.ledger = ledger if ledger is not None else UsageLedger()
        self.retry_config = retry_config or RetryConfig()
        self.fallback_config = fallback_config or FallbackConfig()
        self.request_timeout_s = request_timeout_s
        self.progress: JobProgress | None = None
        self._sleep = sleep
        self._rng = rng

        for provider in self.providers:
            if self.priorities.get(provider.id) is None:
                self.priorities.register(provider)

    @property
    def provider_ids(self) -> list[str]:
        return [provider.id for provider in self.providers]

    def ranked_providers(self) -> list[ModelProvider]:
        """Gateway providers in current priority order."""
        ranked = self.priorities.ranked(self.provider_ids)
        # Providers registered elsewhere under the same id are replaced by ours
        by_id = {provider.id: provider for provider in self.providers}
        return [by_id[provider.id] for provider in ranked if provider.id in by_id]

    def call_budget_s(self) -> float:
        """Worst-case wall time of one ``invoke``.

        Every attempt on every provider the switch budget reaches runs into the
        request timeout, and every backoff draws the maximum jitter.
        """
        config = self.retry_config
        attempts = config.max_retries + 1
        backoff_ms = sum(base_delay(n, config) for n in range(1, attempts)) * (1.0 + config.jitter)
        providers = self.fallback_config.max_switches + 1 if len(self.providers) > 1 else 1
        return providers * (attempts * self.request_timeout_s + backoff_ms / 1000.0)

    async def invoke(
        self,
        request: ModelRequest,
        stage_id: str | None = None,
        token: CancellationToken | None = None,
        on_attempt: Callable[[ProviderAttempt], None] | None = None,
    ) -> FallbackResult[ModelResponse]:
        """Send ``request`` with retries, circuit breaking and failover.

        Args:
            request: Request to send
            stage_id: Stage issuing the request (selects the breaker)
            token: Job cancellation signal
            on_attempt: Called with each provider attempt as soon as it ends

        Returns:
            FallbackResult holding the ModelResponse or the last error with
            the provider history

        Raises:
            OperationCancelledError: If the token fires
        """
        coordinator = FallbackCoordinator(
            self.ranked_providers(),
            self.fallback_config,
            RetryExecutor(self.retry_config, sleep=self._sleep, rng=self._rng),
        )
        operation = functools.partial(self._call_provider, request=request, stage_id=stage_id, token=token)
        result = await coordinator.execute(operation, token=token, on_attempt=on_attempt)

        for attempt in result.history:
            if attempt.success:
                self.priorities.record_success(attempt.provider_id)
            elif attempt.error_kind is None or not attempt.error_kind.is_terminal_request:
                self.priorities.record_failure(attempt.provider_id)

        if self.progress is not None:
            retries = sum(max(0, attempt.attempts - 1) for attempt in result.history)
            self.progress.record_call(retries, result.switches)

        return result

    async def _call_provider(
        self,
        provider: ModelProvider,
        request: ModelRequest,
        stage_id: str | None,
        token: CancellationToken | None,
    ) -> ModelResponse:
        breaker = self.breakers.get(CircuitBreakerRegistry.operation_key(provider.id, stage_id))
        return await breaker.call(functools.partial(self._send, provider, request, token))

    async def _send(
        self,
        provider: ModelProvider,
        request: ModelRequest,
        token: CancellationToken | None,
    ) -> ModelResponse:
        call = asyncio.wait_for(provider.invoke(request), timeout=self.request_timeout_s)
        try:
            result = await (token.guard(call) if token is not None else call)
        except TimeoutError as e:
            raise ProviderTimeoutError(
                f"{provider.id} did not respond within {self.request_timeout_s:.0f}s",
                provider_id=provider.id,
            ) from e

        if not result.ok:
            raise ProviderError.from_failure(result.failure)

        response = result.response
        cost = self.ledger.record_usage(provider.id, response.usage)
        logger.debug(
            "%s/%s answered: %d tokens (~$%.6f)",
            provider.id,
            response.model,
            response.usage.total_tokens,
            cost,
        )
        return response
