"""Core value types and interfaces for the analysis orchestrator."""

from __future__ import annotations

from .errors import RETRYABLE_KINDS, TERMINAL_REQUEST_KINDS, ErrorKind, ProviderFailure
from .interfaces import ModelProvider
from .items import AnalysisItem, PageItem
from .messages import ModelRequest, ModelResponse, ProviderResult, TokenUsage

__all__ = [
    # Errors
    "ErrorKind",
    "ProviderFailure",
    "RETRYABLE_KINDS",
    "TERMINAL_REQUEST_KINDS",
    # Items
    "AnalysisItem",
    "PageItem",
    # Interfaces
    "ModelProvider",
    # Messages
    "ModelRequest",
    "ModelResponse",
    "ProviderResult",
    "TokenUsage",
]
