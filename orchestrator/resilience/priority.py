"""Provider ranking by configured priority and observed success rate."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, replace

from orchestrator.constants import SUCCESS_RATE_DECAY, SUCCESS_RATE_GROWTH
from orchestrator.types.interfaces import ModelProvider

logger = logging.getLogger(__name__)

__all__ = ["ProviderHandle", "ProviderPriorityManager"]


@dataclass(frozen=True)
class ProviderHandle:
    """A registered provider with its ranking state.

    Attributes:
        provider: The provider capability
        priority: Configured weight (higher is preferred)
        success_rate: Exponentially updated rate in [0, 1]
    """

    provider: ModelProvider
    priority: float = 1.0
    success_rate: float = 1.0

    @property
    def id(self) -> str:
        return self.provider.id

    @property
    def score(self) -> float:
        return self.priority * self.success_rate


class ProviderPriorityManager:
    """Ranks providers by ``priority * success_rate``.

    Successes multiply the rate by 1.1 (capped at 1.0), failures by 0.9
    (floored at 0.0). Handles are replaced, never mutated, and every update
    happens under a lock since the manager is shared between jobs.

    Example:
        >>> manager = ProviderPriorityManager()
        >>> manager.register(gemini, priority=2.0)
        >>> manager.register(openai, priority=1.0)
        >>> manager.best_provider().id
        'gemini'
    """

    def __init__(self) -> None:
        self._handles: dict[str, ProviderHandle] = {}
        self._lock = threading.Lock()

    def register(self, provider: ModelProvider, priority: float = 1.0, success_rate: float = 1.0) -> ProviderHandle:
        handle = ProviderHandle(provider, priority, min(1.0, max(0.0, success_rate)))
        with self._lock:
            self._handles[provider.id] = handle
        logger.debug("Registered provider %s (priority=%.2f)", provider.id, priority)
        return handle

    def unregister(self, provider_id: str) -> None:
        with self._lock:
            self._handles.pop(provider_id, None)

    def get(self, provider_id: str) -> ProviderHandle | None:
        with self._lock:
            return self._handles.get(provider_id)

    def success_rate(self, provider_id: str) -> float:
        handle = self.get(provider_id)
        return handle.success_rate if handle is not None else 0.0

    def record_success(self, provider_id: str) -> None:
        with self._lock:
            handle = self._handles.get(provider_id)
            if handle is None:
                return
            rate = min(1.0, handle.success_rate * SUCCESS_RATE_GROWTH)
            self._handles[provider_id] = replace(handle, success_rate=rate)

    def record_failure(self, provider_id: str) -> None:
        with self._lock:
            handle = self._handles.get(provider_id)
            if handle is None:
                return
            rate = max(0.0, handle.success_rate * SUCCESS_RATE_DECAY)
            self._handles[provider_id] = replace(handle, success_rate=rate)
        logger.debug("Provider %s success rate now %.3f", provider_id, rate)

    def ranked(self, provider_ids: Sequence[str] | None = None) -> list[ModelProvider]:
        """Registered providers, best score first.

        Ties keep registration order. Unusable providers are included so that
        the fallback coordinator can still skip them explicitly.
        """
        with self._lock:
            handles = list(self._handles.values())
        if provider_ids is not None:
            wanted = set(provider_ids)
            handles = [h for h in handles if h.id in wanted]
        handles.sort(key=lambda h: h.score, reverse=True)
        return [h.provider for h in handles]

    def best_provider(self) -> ModelProvider | None:
        """Usable provider maximizing ``priority * success_rate``."""
        for provider in self.ranked():
            if provider.is_usable():
                return provider
        return None

    def snapshot(self) -> dict[str, dict[str, float]]:
        with self._lock:
            handles = list(self._handles.values())
        return {h.id: {"priority": h.priority, "success_rate": round(h.success_rate, 4)} for h in handles}
