"""Request and response values exchanged with model providers.

Prompt text and response text are opaque strings here: building prompts and
repairing model output belong to the callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from orchestrator.constants import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from orchestrator.types.errors import ErrorKind, ProviderFailure

__all__ = ["ModelRequest", "ModelResponse", "TokenUsage", "ProviderResult"]


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported for one provider call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ModelRequest:
    """A single multimodal request.

    Attributes:
        prompt: User prompt text (opaque to the orchestrator)
        images: Raw page image bytes, in reading order
        system_prompt: Optional system instruction
        max_tokens: Output token budget
        temperature: Sampling temperature
        metadata: Free-form context (stage, batch index, pass number, hints)
    """

    prompt: str
    images: tuple[bytes, ...] = ()
    system_prompt: str | None = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelResponse:
    """Successful provider output."""

    text: str
    provider_id: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None


@dataclass(frozen=True)
class ProviderResult:
    """Result<ModelResponse, ProviderFailure> returned by ``ModelProvider.invoke``.

    Exactly one of ``response`` and ``failure`` is set.

    Example:
        >>> result = await provider.invoke(request)
        >>> if result.ok:
        ...     print(result.response.text)
        ... else:
        ...     print(result.failure.kind)
    """

    response: ModelResponse | None = None
    failure: ProviderFailure | None = None

    def __post_init__(self) -> None:
        if (self.response is None) == (self.failure is None):
            raise ValueError("ProviderResult requires exactly one of response or failure")

    @property
    def ok(self) -> bool:
        return self.response is not None

    @classmethod
    def success(cls, response: ModelResponse) -> ProviderResult:
        return cls(response=response)

    @classmethod
    def error(
        cls,
        kind: ErrorKind,
        message: str,
        provider_id: str | None = None,
        status_code: int | None = None,
    ) -> ProviderResult:
        return cls(failure=ProviderFailure(kind, message, provider_id, status_code))
