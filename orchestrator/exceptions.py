"""Custom exception classes for the analysis orchestrator.

Exceptions are reserved for programming errors (malformed stage graphs,
invalid configuration) and for control flow inside a single component. Every
expected runtime failure is converted into a value (``RetryResult``,
``FallbackResult``, ``StageResult``, ``JobReport``) before it crosses a
component boundary.

Exception Hierarchy:
    OrchestratorError (base)
    ├── ConfigurationError
    │   ├── InvalidConfigError
    │   └── MissingConfigError
    ├── ProviderError (carries an ErrorKind)
    │   ├── ProviderRateLimitError
    │   ├── ProviderAuthenticationError
    │   └── ProviderTimeoutError
    ├── CircuitOpenError
    ├── StageError
    │   ├── StageGraphError
    │   ├── StageDependencyError
    │   └── StageTimeoutError
    ├── OperationCancelledError
    └── DependencyError

Usage:
    try:
        pipeline.register(stage)
    except StageGraphError as e:
        logger.error("Rejected stage graph: %s", e)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from orchestrator.types.errors import ErrorKind

if TYPE_CHECKING:
    from orchestrator.types.errors import ProviderFailure


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(OrchestratorError):
    """Base exception for configuration-related errors."""


class InvalidConfigError(ConfigurationError):
    """Raised when configuration values are invalid or malformed.

    Examples:
        - overlap_size not smaller than max_batch_size
        - Negative retry counts or delays
        - Unknown detail level
    """


class MissingConfigError(ConfigurationError):
    """Raised when required configuration is missing.

    Examples:
        - No provider configured
        - Missing API key for the only configured provider
    """


# ============================================================================
# Provider Errors
# ============================================================================


class ProviderError(OrchestratorError):
    """A classified failure reported by a model provider.

    The ``kind`` is decided once, at the adapter boundary, and never
    re-derived from the message text afterwards.
    """

    default_kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: ErrorKind | None = None, provider_id: str | None = None):
        self.kind = kind or self.default_kind
        self.provider_id = provider_id
        super().__init__(message)

    @classmethod
    def from_failure(cls, failure: ProviderFailure) -> ProviderError:
        error_class = _KIND_TO_ERROR.get(failure.kind, ProviderError)
        return error_class(failure.message, kind=failure.kind, provider_id=failure.provider_id)


class ProviderRateLimitError(ProviderError):
    """Raised when a provider rejects a call for rate-limit reasons (HTTP 429)."""

    default_kind = ErrorKind.RATE_LIMIT


class ProviderAuthenticationError(ProviderError):
    """Raised when provider credentials are rejected (HTTP 401/403)."""

    default_kind = ErrorKind.AUTHENTICATION


class ProviderTimeoutError(ProviderError):
    """Raised when a provider request exceeds its timeout."""

    default_kind = ErrorKind.TIMEOUT


_KIND_TO_ERROR: dict[ErrorKind, type[ProviderError]] = {
    ErrorKind.RATE_LIMIT: ProviderRateLimitError,
    ErrorKind.AUTHENTICATION: ProviderAuthenticationError,
    ErrorKind.TIMEOUT: ProviderTimeoutError,
}


# ============================================================================
# Circuit Breaker
# ============================================================================


class CircuitOpenError(OrchestratorError):
    """Raised when a call is rejected because its circuit breaker is open."""

    def __init__(self, operation: str, retry_after_s: float = 0.0):
        self.operation = operation
        self.retry_after_s = retry_after_s
        super().__init__(f"Circuit breaker is open for {operation} (retry in {retry_after_s:.1f}s)")


# ============================================================================
# Stage Errors
# ============================================================================


class StageError(OrchestratorError):
    """Exception raised when stage processing fails."""

    def __init__(self, stage_name: str, message: str, cause: Exception | None = None):
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(f"[{stage_name}] {message}")


class StageGraphError(StageError):
    """Raised at registration time for cyclic or dangling stage graphs."""


class StageDependencyError(StageError):
    """Raised when a stage's prerequisites did not complete successfully."""


class StageTimeoutError(StageError):
    """Recorded as a stage failure when a stage exceeds its timeout."""


# ============================================================================
# Cancellation
# ============================================================================


class OperationCancelledError(OrchestratorError):
    """Raised inside a job when its cancellation signal fires."""


# ============================================================================
# Dependency Errors
# ============================================================================


class DependencyError(OrchestratorError):
    """Raised when an optional provider SDK is missing or incompatible."""
