"""Component interface definitions for the analysis orchestrator.

The orchestrator consumes exactly one capability from its environment: a
model provider that can be asked whether it is usable and can be invoked
asynchronously.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .messages import ModelRequest, ProviderResult


@runtime_checkable
class ModelProvider(Protocol):
    """Model provider interface.

    Attributes:
        id: Provider identifier (e.g., "gemini", "openai")

    Methods:
        is_usable: Whether the provider is configured and ready
        invoke: Send one request and return a classified result

    Example:
        >>> provider = GeminiProvider(model="gemini-2.5-flash")
        >>> provider.id
        'gemini'
        >>> result = await provider.invoke(ModelRequest(prompt="Summarize"))
    """

    id: str

    def is_usable(self) -> bool:
        """Return True if the provider can accept requests.

        Returns:
            False when credentials are missing or the client failed to initialize
        """
        ...

    async def invoke(self, request: ModelRequest) -> ProviderResult:
        """Send a request to the provider.

        Implementations must not raise for provider-side failures; they
        return ``ProviderResult.error(kind, ...)`` instead. Cancellation of
        the awaiting task must be honored.

        Args:
            request: The request to send

        Returns:
            ProviderResult holding either a response or a classified failure
        """
        ...
