"""Provider registry for model provider adapters.

Maps provider names, aliases and model names to adapter classes, loading
SDK-backed adapters lazily so that a missing SDK only matters when its
provider is requested.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from typing import Any

from orchestrator.exceptions import DependencyError
from orchestrator.types.interfaces import ModelProvider

logger = logging.getLogger(__name__)

__all__ = ["ProviderRegistry", "provider_registry"]


class ProviderRegistry:
    """Registry for provider adapters.

    Example:
        >>> from orchestrator.providers.registry import provider_registry
        >>> provider = provider_registry.create("gemini-2.5-flash")
        >>> claude = provider_registry.create("anthropic/claude-sonnet-4")
        >>> provider_registry.list_available()
        ['anthropic', 'gemini', 'openai']
    """

    # name -> (module, class, default_kwargs)
    _BUILTIN_PROVIDERS: dict[str, tuple[str, str, dict[str, Any]]] = {
        "gemini": (
            "orchestrator.providers.gemini",
            "GeminiProvider",
            {},
        ),
        "openai": (
            "orchestrator.providers.openai",
            "OpenAIProvider",
            {},
        ),
        "anthropic": (
            "orchestrator.providers.openai",
            "OpenAIProvider",
            {"model": "anthropic/claude-sonnet-4", "provider_id": "anthropic"},
        ),
    }

    # Model name patterns for auto-detection
    _MODEL_PATTERNS: dict[str, str] = {
        "gemini": "gemini",
        "gpt": "openai",
        "claude": "anthropic",  # via OpenRouter
    }

    _ALIASES: dict[str, str] = {
        "google": "gemini",
        "claude": "anthropic",
        "openrouter": "anthropic",
    }

    def __init__(self) -> None:
        self._custom_providers: dict[str, Callable[..., ModelProvider]] = {}
        self._loaded_classes: dict[str, type] = {}

    def register(self, name: str, factory: type | Callable[..., ModelProvider]) -> None:
        """Register a custom provider class or factory.

        Args:
            name: Provider name for lookup
            factory: Provider class or factory function
        """
        if name in self._BUILTIN_PROVIDERS:
            logger.warning("Overriding built-in provider: %s", name)

        self._custom_providers[name] = factory
        logger.debug("Registered provider: %s", name)

    def resolve_name(self, name: str) -> tuple[str, dict[str, Any]]:
        """Resolve a provider or model name.

        Args:
            name: Provider name ("gemini"), alias ("claude") or model name
                ("gpt-4o", "anthropic/claude-sonnet-4")

        Returns:
            Tuple of (provider_name, extra_kwargs)

        Raises:
            ValueError: If nothing matches
        """
        if name in self._ALIASES:
            return self._ALIASES[name], {}

        if name in self._BUILTIN_PROVIDERS or name in self._custom_providers:
            return name, {}

        name_lower = name.lower()
        for pattern, provider_name in self._MODEL_PATTERNS.items():
            if pattern in name_lower:
                return provider_name, {"model": name}

        raise ValueError(f"Unknown provider: '{name}'. Available: {', '.join(self.list_available())}")

    def get_class(self, name: str) -> tuple[type | Callable[..., ModelProvider], dict[str, Any]]:
        """Get the adapter class for a name (lazy loading).

        Raises:
            ValueError: If the provider is unknown
            DependencyError: If the provider SDK cannot be imported
        """
        resolved_name, extra_kwargs = self.resolve_name(name)

        if resolved_name in self._custom_providers:
            return self._custom_providers[resolved_name], extra_kwargs

        module_path, class_name, default_kwargs = self._BUILTIN_PROVIDERS[resolved_name]
        if resolved_name not in self._loaded_classes:
            try:
                module = importlib.import_module(module_path)
            except ImportError as e:
                raise DependencyError(f"Failed to import provider '{resolved_name}': {e}") from e
            self._loaded_classes[resolved_name] = getattr(module, class_name)

        return self._loaded_classes[resolved_name], {**default_kwargs, **extra_kwargs}

    def create(self, name: str, **kwargs: Any) -> ModelProvider:
        """Create a provider instance.

        Example:
            >>> provider = registry.create("gemini")
            >>> provider = registry.create("openai", model="gpt-4o-mini")
        """
        provider_class, default_kwargs = self.get_class(name)
        return provider_class(**{**default_kwargs, **kwargs})

    def list_available(self) -> list[str]:
        names = set(self._BUILTIN_PROVIDERS)
        names.update(self._custom_providers)
        return sorted(names)

    def is_available(self, name: str) -> bool:
        try:
            self.resolve_name(name)
        except ValueError:
            return False
        return True

    def __contains__(self, name: str) -> bool:
        return self.is_available(name)

    def __repr__(self) -> str:
        return f"ProviderRegistry(available={self.list_available()})"


provider_registry = ProviderRegistry()
