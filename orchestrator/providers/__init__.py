"""Model provider adapters.

SDK-backed adapters are imported lazily through ``provider_registry``; import
``orchestrator.providers.gemini`` or ``orchestrator.providers.openai``
directly to use one explicitly.
"""

from __future__ import annotations

from .base import BaseModelProvider, prepare_image, status_to_kind
from .registry import ProviderRegistry, provider_registry

__all__ = [
    "BaseModelProvider",
    "ProviderRegistry",
    "prepare_image",
    "provider_registry",
    "status_to_kind",
]
