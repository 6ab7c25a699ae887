"""Circuit breaker per operation class.

An operation class is "calls to provider X for stage Y"; one breaker is shared
by every retry and every batch of that class, and by concurrent jobs through
``CircuitBreakerRegistry``. Failure counts and closed/open/half-open state
live on a ``pybreaker.CircuitBreaker``; this module adds the async call path,
a cool-down measured on an injectable clock, and the single half-open trial.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import pybreaker

from orchestrator.constants import DEFAULT_FAILURE_THRESHOLD, DEFAULT_RESET_TIMEOUT_MS
from orchestrator.exceptions import CircuitOpenError, InvalidConfigError, OperationCancelledError, ProviderError

logger = logging.getLogger(__name__)

__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CircuitState"]

T = TypeVar("T")

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATES = {
    pybreaker.STATE_CLOSED: CircuitState.CLOSED,
    pybreaker.STATE_OPEN: CircuitState.OPEN,
    pybreaker.STATE_HALF_OPEN: CircuitState.HALF_OPEN,
}


@dataclass(frozen=True)
class _Ticket:
    """State epoch a call was admitted in."""

    generation: int
    trial: bool = False


class _RecordedFailure(Exception):
    """Failure handed to pybreaker on behalf of an awaited call."""


class _TransitionListener(pybreaker.CircuitBreakerListener):
    """Stamps the open time on the injected clock and logs transitions."""

    def __init__(self, owner: CircuitBreaker):
        self.owner = owner

    def state_change(self, cb, old_state, new_state) -> None:
        # Called by pybreaker with the breaker lock held
        self.owner._generation += 1
        name = new_state.name
        if name == pybreaker.STATE_OPEN:
            self.owner._opened_at = self.owner._clock()
            if getattr(old_state, "name", None) == pybreaker.STATE_HALF_OPEN:
                logger.warning("Circuit %s re-opened after failed trial", self.owner.name)
            else:
                logger.warning("Circuit %s opened after %d consecutive failures", self.owner.name, cb.fail_counter)
        elif name == pybreaker.STATE_HALF_OPEN:
            logger.info("Circuit %s half-open, allowing one trial call", self.owner.name)
        elif getattr(old_state, "name", None) == pybreaker.STATE_HALF_OPEN:
            logger.info("Circuit %s closed after successful trial", self.owner.name)


class CircuitBreaker:
    """Closed / open / half-open breaker with a single half-open trial.

    Transitions:
        closed -> open: consecutive failures reach ``failure_threshold``
        open -> half-open: ``now - opened_at > reset_timeout``
        half-open -> closed: trial succeeds (failure count reset to 0)
        half-open -> open: trial fails (cool-down restarts)

    Outcomes are applied only in the state the call was admitted in. A call
    admitted while closed that finishes after the breaker opened is ignored,
    and in half-open only the trial call decides the next state.

    Example:
        >>> breaker = CircuitBreaker("gemini:overview", failure_threshold=3)
        >>> value = await breaker.call(lambda: provider_call())
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: float = DEFAULT_RESET_TIMEOUT_MS,
        clock: Clock | None = None,
    ):
        if failure_threshold < 1:
            raise InvalidConfigError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if reset_timeout_ms < 0:
            raise InvalidConfigError(f"reset_timeout_ms must be >= 0, got {reset_timeout_ms}")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock or time.monotonic
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._generation = 0

        self._breaker = pybreaker.CircuitBreaker(
            fail_max=failure_threshold,
            reset_timeout=reset_timeout_ms / 1000.0,
            name=name,
            listeners=[_TransitionListener(self)],
            throw_new_error_on_trip=False,
        )
        self._lock = self._breaker._lock  # type: ignore[attr-defined]

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return _STATES[self._breaker.current_state]

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._breaker.fail_counter

    def _refresh(self) -> None:
        # Caller holds the lock
        if self._breaker.current_state == pybreaker.STATE_OPEN and self._cooldown_elapsed():
            self._trial_in_flight = False
            self._breaker.half_open()

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return (self._clock() - self._opened_at) * 1000.0 > self.reset_timeout_ms

    def retry_after_s(self) -> float:
        """Seconds until the open breaker admits a trial (0 when not open)."""
        with self._lock:
            if self._breaker.current_state != pybreaker.STATE_OPEN or self._opened_at is None:
                return 0.0
            elapsed_ms = (self._clock() - self._opened_at) * 1000.0
            return max(0.0, (self.reset_timeout_ms - elapsed_ms) / 1000.0)

    def _admit(self) -> _Ticket | None:
        with self._lock:
            self._refresh()
            current = self._breaker.current_state
            if current == pybreaker.STATE_CLOSED:
                return _Ticket(self._generation)
            if current == pybreaker.STATE_HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return _Ticket(self._generation, trial=True)
            return None

    def allow_request(self) -> bool:
        """Whether a call may be issued now.

        In half-open state only the first caller gets ``True`` until the trial
        outcome is recorded.
        """
        return self._admit() is not None

    def _settle(self, ticket: _Ticket, error: BaseException | None) -> None:
        with self._lock:
            if ticket.trial:
                self._trial_in_flight = False
            if ticket.generation != self._generation:
                logger.debug("Circuit %s ignoring outcome admitted before the last transition", self.name)
                return

            state = self._breaker.state
            if error is None:
                state._handle_success()
                return
            with contextlib.suppress(_RecordedFailure, pybreaker.CircuitBreakerError):
                state._handle_error(_RecordedFailure(str(error)), reraise=False)

    def _current_ticket(self) -> _Ticket | None:
        # Outcome reported without call(): counted when closed, or as the half-open trial
        with self._lock:
            self._refresh()
            current = self._breaker.current_state
            if current == pybreaker.STATE_CLOSED:
                return _Ticket(self._generation)
            if current == pybreaker.STATE_HALF_OPEN and self._trial_in_flight:
                return _Ticket(self._generation, trial=True)
            return None

    def record_success(self) -> None:
        ticket = self._current_ticket()
        if ticket is not None:
            self._settle(ticket, None)

    def record_failure(self, error: BaseException | None = None) -> None:
        ticket = self._current_ticket()
        if ticket is not None:
            self._settle(ticket, error or RuntimeError(f"{self.name} failed"))

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Request-level provider errors (invalid request, content filter,
        context length) count as success: the provider itself responded.

        Raises:
            CircuitOpenError: If the breaker denies the call
        """
        ticket = self._admit()
        if ticket is None:
            raise CircuitOpenError(self.name, self.retry_after_s())

        try:
            value = await operation()
        except (OperationCancelledError, asyncio.CancelledError):
            if ticket.trial:
                self._release_trial()
            raise
        except ProviderError as e:
            self._settle(ticket, None if e.kind.is_terminal_request else e)
            raise
        except Exception as e:
            self._settle(ticket, e)
            raise

        self._settle(ticket, None)
        return value

    def reset(self) -> None:
        with self._lock:
            self._breaker.close()
            self._opened_at = None
            self._trial_in_flight = False

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            self._refresh()
            return {
                "name": self.name,
                "state": _STATES[self._breaker.current_state].value,
                "failure_count": self._breaker.fail_counter,
                "opened_at": self._opened_at,
            }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, state={self.state.value})"

class CircuitBreakerRegistry:
    """Lazily created breakers keyed by operation class.

    One registry is meant to be shared by all jobs of a process.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: float = DEFAULT_RESET_TIMEOUT_MS,
        clock: Clock | None = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @staticmethod
    def operation_key(provider_id: str, stage_id: str | None = None) -> str:
        return f"{provider_id}:{stage_id}" if stage_id else provider_id

    def get(self, operation: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(operation)
            if breaker is None:
                breaker = CircuitBreaker(
                    operation,
                    failure_threshold=self.failure_threshold,
                    reset_timeout_ms=self.reset_timeout_ms,
                    clock=self._clock,
                )
                self._breakers[operation] = breaker
            return breaker

    def states(self) -> dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.state.value for breaker in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
