"""Provider failover bounded by a switch budget.

Each provider is first driven through the ``RetryExecutor``; only after its
retries are exhausted (or it failed terminally) does the coordinator decide
whether to switch. Every provider attempt is appended to the returned history.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from orchestrator.exceptions import CircuitOpenError, InvalidConfigError, ProviderError
from orchestrator.misc import elapsed_ms
from orchestrator.resilience.retry import RetryExecutor, classify_error
from orchestrator.types.errors import ErrorKind
from orchestrator.types.interfaces import ModelProvider

if TYPE_CHECKING:
    from orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)

__all__ = ["FallbackConfig", "FallbackCoordinator", "FallbackResult", "ProviderAttempt"]

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackConfig:
    """Switching policy.

    Attributes:
        max_switches: Maximum provider switches per call
        switch_on_error: Switch on any non-request error
        switch_on_rate_limit: Switch when retries end in rate limiting
    """

    max_switches: int = 2
    switch_on_error: bool = False
    switch_on_rate_limit: bool = True

    def validate(self) -> None:
        if self.max_switches < 0:
            raise InvalidConfigError(f"max_switches must be >= 0, got {self.max_switches}")


@dataclass(frozen=True)
class ProviderAttempt:
    """One provider's share of a fallback call.

    Attributes:
        provider_id: Provider that was tried
        success: Whether it produced a value
        attempts: Retry attempts spent on it
        error: Final error message, if it failed
        error_kind: Classified final error, if it failed
        duration_ms: Wall time including backoff
    """

    provider_id: str
    success: bool
    attempts: int
    error: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "provider_id": self.provider_id,
            "success": self.success,
            "attempts": self.attempts,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """Outcome of ``FallbackCoordinator.execute``."""

    success: bool
    value: T | None = None
    error: Exception | None = None
    provider_used: str | None = None
    switches: int = 0
    history: tuple[ProviderAttempt, ...] = field(default_factory=tuple)

    @property
    def error_kind(self) -> ErrorKind | None:
        if self.error is None:
            return None
        return classify_error(self.error)

    @property
    def total_attempts(self) -> int:
        return sum(attempt.attempts for attempt in self.history)


ProviderOperation = Callable[[ModelProvider], Awaitable[T]]


class FallbackCoordinator:
    """Runs an operation against an ordered provider list.

    A switch happens only when (a) switch budget remains, (b) the error
    warrants it and (c) another usable provider exists, found by scanning
    forward circularly from the current index. Request-level errors
    (invalid request, content filter, context length) never switch.

    Example:
        >>> coordinator = FallbackCoordinator([gemini, openai], FallbackConfig(max_switches=1))
        >>> result = await coordinator.execute(lambda provider: call(provider))
        >>> result.provider_used, [a.provider_id for a in result.history]
        ('openai', ['gemini', 'openai'])
    """

    def __init__(
        self,
        providers: Sequence[ModelProvider],
        config: FallbackConfig | None = None,
        retry_executor: RetryExecutor | None = None,
    ):
        self.providers = list(providers)
        self.config = config or FallbackConfig()
        self.config.validate()
        self.retry_executor = retry_executor or RetryExecutor()

    async def execute(
        self,
        operation: ProviderOperation[T],
        token: CancellationToken | None = None,
        on_attempt: Callable[[ProviderAttempt], None] | None = None,
    ) -> FallbackResult[T]:
        """Run ``operation(provider)`` with retries and failover.

        Args:
            operation: Coroutine factory taking the provider to call
            token: Cancellation signal shared with the retry loop
            on_attempt: Called with each provider attempt as it is appended to
                the history, so callers keep it if they abandon the call

        Returns:
            FallbackResult with the value or the last error and full history

        Raises:
            OperationCancelledError: If the token fires
        """
        index = self._first_usable()
        if index is None:
            error = ProviderError("No usable provider configured", kind=ErrorKind.UNKNOWN)
            logger.error("%s", error)
            return FallbackResult(success=False, error=error)

        history: list[ProviderAttempt] = []
        switches = 0

        while True:
            provider = self.providers[index]
            started = time.perf_counter()
            result = await self.retry_executor.execute(
                functools.partial(operation, provider),
                token=token,
                operation_name=provider.id,
            )
            attempt = ProviderAttempt(
                provider_id=provider.id,
                success=result.success,
                attempts=result.attempts,
                error=str(result.error) if result.error is not None else None,
                error_kind=result.error_kind,
                duration_ms=elapsed_ms(started),
            )
            history.append(attempt)
            if on_attempt is not None:
                on_attempt(attempt)

            if result.success:
                return FallbackResult(
                    success=True,
                    value=result.value,
                    provider_used=provider.id,
                    switches=switches,
                    history=tuple(history),
                )

            error = result.error
            if switches >= self.config.max_switches or not self.should_switch(error):
                break

            next_index = self._next_usable(index)
            if next_index is None:
                logger.warning("No other usable provider after %s failed", provider.id)
                break

            switches += 1
            logger.warning(
                "Switching provider %s -> %s (%d/%d): %s",
                provider.id,
                self.providers[next_index].id,
                switches,
                self.config.max_switches,
                error,
            )
            index = next_index

        return FallbackResult(
            success=False,
            error=error,
            provider_used=provider.id,
            switches=switches,
            history=tuple(history),
        )

    def should_switch(self, error: Exception | None) -> bool:
        """Whether the final error of a provider warrants trying another one."""
        if error is None:
            return False
        if isinstance(error, CircuitOpenError):
            return self.config.switch_on_rate_limit or self.config.switch_on_error

        kind = classify_error(error)
        if kind.is_terminal_request:
            return False
        if kind is ErrorKind.AUTHENTICATION:
            return True
        if kind is ErrorKind.RATE_LIMIT:
            return self.config.switch_on_rate_limit or self.config.switch_on_error
        return self.config.switch_on_error

    def _first_usable(self) -> int | None:
        for i, provider in enumerate(self.providers):
            if provider.is_usable():
                return i
        return None

    def _next_usable(self, current: int) -> int | None:
        count = len(self.providers)
        for offset in range(1, count):
            candidate = (current + offset) % count
            if self.providers[candidate].is_usable():
                return candidate
        return None
