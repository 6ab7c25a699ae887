"""Closed error-kind enumeration produced at the provider-adapter boundary."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

__all__ = [
    "ErrorKind",
    "ProviderFailure",
    "RETRYABLE_KINDS",
    "TERMINAL_REQUEST_KINDS",
]


class ErrorKind(str, Enum):
    """Classification of a failed provider call.

    Retryable-transient: RATE_LIMIT, NETWORK, TIMEOUT, TRANSIENT_API_ERROR.
    Terminal-request: INVALID_REQUEST, CONTENT_FILTER, CONTEXT_LENGTH_EXCEEDED.
    Terminal-auth: AUTHENTICATION (switch provider, never retry).
    """

    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    CONTENT_FILTER = "content_filter"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    TRANSIENT_API_ERROR = "transient_api_error"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        return self in RETRYABLE_KINDS

    @property
    def is_terminal_request(self) -> bool:
        return self in TERMINAL_REQUEST_KINDS


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.TRANSIENT_API_ERROR,
    }
)

TERMINAL_REQUEST_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.INVALID_REQUEST,
        ErrorKind.CONTENT_FILTER,
        ErrorKind.CONTEXT_LENGTH_EXCEEDED,
    }
)


@dataclass(frozen=True)
class ProviderFailure:
    """Value describing why a provider call failed.

    Attributes:
        kind: Classified error kind
        message: Human-readable provider message
        provider_id: Provider that produced the failure
        status_code: HTTP status when the SDK exposes one
    """

    kind: ErrorKind
    message: str
    provider_id: str | None = None
    status_code: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "provider_id": self.provider_id,
            "status_code": self.status_code,
        }
