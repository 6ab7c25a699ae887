"""Retry, circuit breaking and provider failover."""

from __future__ import annotations

from .circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .fallback import FallbackConfig, FallbackCoordinator, FallbackResult, ProviderAttempt
from .priority import ProviderHandle, ProviderPriorityManager
from .retry import (
    RetryAttempt,
    RetryConfig,
    RetryExecutor,
    RetryResult,
    base_delay,
    classify_error,
    compute_backoff,
    is_retryable,
)

__all__ = [
    # Retry
    "RetryAttempt",
    "RetryConfig",
    "RetryExecutor",
    "RetryResult",
    "base_delay",
    "classify_error",
    "compute_backoff",
    "is_retryable",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Fallback
    "FallbackConfig",
    "FallbackCoordinator",
    "FallbackResult",
    "ProviderAttempt",
    # Priority
    "ProviderHandle",
    "ProviderPriorityManager",
]
