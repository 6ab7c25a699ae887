"""Bounded exponential backoff with jitter around one async operation.

Each invocation walks ``Attempting(n) -> Success | RetryableFailure ->
Attempting(n+1) | TerminalFailure``. Exhaustion and terminal errors come back
as a ``RetryResult`` value; only cancellation escapes as an exception. The
attempt loop itself is ``tenacity.AsyncRetrying`` with a jittered wait.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from orchestrator.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    JITTER_FRACTION,
)
from orchestrator.exceptions import CircuitOpenError, InvalidConfigError, OperationCancelledError, ProviderError
from orchestrator.types.errors import ErrorKind

if TYPE_CHECKING:
    from orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)

__all__ = [
    "JitteredBackoff",
    "RetryAttempt",
    "RetryConfig",
    "RetryExecutor",
    "RetryResult",
    "base_delay",
    "classify_error",
    "compute_backoff",
    "is_retryable",
]

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryConfig:
    """Retry tuning.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound of the pre-jitter delay
        backoff_multiplier: Growth factor per attempt
        jitter: Multiplicative jitter fraction (0.25 -> factor in [0.75, 1.25])
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = JITTER_FRACTION

    def validate(self) -> None:
        if self.max_retries < 0:
            raise InvalidConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise InvalidConfigError("Retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise InvalidConfigError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if not 0 <= self.jitter < 1:
            raise InvalidConfigError(f"jitter must be in [0, 1), got {self.jitter}")


def base_delay(attempt: int, config: RetryConfig) -> float:
    """Pre-jitter delay in ms for 1-indexed ``attempt``."""
    return min(config.initial_delay_ms * config.backoff_multiplier ** (attempt - 1), config.max_delay_ms)


def compute_backoff(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> float:
    """Jittered backoff delay in ms for 1-indexed ``attempt``.

    Example:
        >>> config = RetryConfig(initial_delay_ms=1000, backoff_multiplier=2, max_delay_ms=30000)
        >>> 12000 <= compute_backoff(5, config) <= 20000
        True
    """
    uniform = (rng or random).uniform
    factor = 1.0 + uniform(-config.jitter, config.jitter)
    return max(0.0, base_delay(attempt, config) * factor)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception raised inside an operation to an ``ErrorKind``.

    Provider errors carry their kind from the adapter boundary; bare
    timeout and connection errors from the runtime are mapped structurally.
    """
    if isinstance(error, ProviderError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, CircuitOpenError):
        return False
    return classify_error(error).is_retryable


@dataclass(frozen=True)
class RetryAttempt:
    """One entry of the attempt log.

    Attributes:
        attempt: 1-indexed attempt number
        delay_ms: Backoff applied after this attempt (0 for the last one)
        error: Error message, None on success
        error_kind: Classified error kind, None on success
    """

    attempt: int
    delay_ms: float = 0.0
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of ``RetryExecutor.execute``."""

    success: bool
    value: T | None = None
    error: Exception | None = None
    attempts: int = 0
    total_delay_ms: float = 0.0
    log: tuple[RetryAttempt, ...] = field(default_factory=tuple)

    @property
    def error_kind(self) -> ErrorKind | None:
        if self.error is None:
            return None
        return classify_error(self.error)


class JitteredBackoff(wait_base):
    """Tenacity wait strategy: capped exponential delay times ``U[1-jitter, 1+jitter]``."""

    def __init__(self, config: RetryConfig, rng: random.Random | None = None):
        self.config = config
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff(retry_state.attempt_number, self.config, self.rng) / 1000.0


def _should_retry(error: BaseException) -> bool:
    if not isinstance(error, Exception) or isinstance(error, OperationCancelledError):
        return False
    return is_retryable(error)


class RetryExecutor:
    """Runs an async operation with bounded exponential backoff.

    Attempts are driven by ``tenacity.AsyncRetrying``; its final exception is
    folded into a ``RetryResult`` so callers branch on a value.

    Attributes:
        config: Retry tuning
        sleep: Awaitable sleep taking seconds (injectable for tests)
        rng: Random source for jitter

    Example:
        >>> executor = RetryExecutor(RetryConfig(max_retries=2))
        >>> result = await executor.execute(lambda: provider_call())
        >>> result.success, result.attempts
        (True, 1)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or RetryConfig()
        self.config.validate()
        self.sleep = sleep or asyncio.sleep
        self.rng = rng

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: CancellationToken | None = None,
        operation_name: str = "operation",
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails terminally or retries run out.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            token: Cancellation signal checked before each attempt and during backoff
            operation_name: Label for logging

        Returns:
            RetryResult with the value or the last error

        Raises:
            OperationCancelledError: If the token fires
        """
        max_attempts = self.config.max_retries + 1
        log: list[RetryAttempt] = []

        def record_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay_ms = retry_state.next_action.sleep * 1000.0 if retry_state.next_action else 0.0
            kind = classify_error(error)
            log.append(RetryAttempt(retry_state.attempt_number, delay_ms, str(error), kind))
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.0fms",
                operation_name,
                retry_state.attempt_number,
                max_attempts,
                kind.value,
                delay_ms,
            )

        async def pause(seconds: float) -> None:
            await self._pause(seconds, token)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=JitteredBackoff(self.config, self.rng),
            retry=retry_if_exception(_should_retry),
            sleep=pause,
            before_sleep=record_retry,
            reraise=True,
        )

        state: RetryCallState | None = None
        try:
            async for attempt in retrying:
                state = attempt.retry_state
                with attempt:
                    if token is not None:
                        token.raise_if_cancelled()
                    value = await operation()
        except OperationCancelledError:
            raise
        except Exception as e:
            attempts = state.attempt_number if state else 1
            kind = classify_error(e)
            log.append(RetryAttempt(attempts, 0.0, str(e), kind))
            if attempts > 1 or is_retryable(e):
                logger.error("%s failed after %d attempt(s): %s", operation_name, attempts, e)
            else:
                logger.debug("%s failed terminally (%s): %s", operation_name, kind.value, e)
            return RetryResult(
                success=False,
                error=e,
                attempts=attempts,
                total_delay_ms=state.idle_for * 1000.0 if state else 0.0,
                log=tuple(log),
            )

        attempts = state.attempt_number if state else 1
        log.append(RetryAttempt(attempts))
        return RetryResult(
            success=True,
            value=value,
            attempts=attempts,
            total_delay_ms=state.idle_for * 1000.0 if state else 0.0,
            log=tuple(log),
        )

    async def _pause(self, seconds: float, token: CancellationToken | None) -> None:
        if token is None:
            await self.sleep(seconds)
            return
        await token.guard(self.sleep(seconds))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(max_retries={self.config.max_retries})"
