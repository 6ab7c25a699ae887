"""Token usage and cost tracking.

A ``UsageLedger`` is constructed explicitly per job (or per caller) and
passed to the components that report into it; there is no module-global
tracker. Addition is the only mutation, and ``reset()`` zeroes everything.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from orchestrator.constants import TOKENS_PER_MILLION
from orchestrator.types.messages import TokenUsage

logger = logging.getLogger(__name__)

__all__ = ["ProviderRates", "ProviderUsage", "UsageRecord", "UsageLedger", "PROVIDER_RATES", "cost_for"]


@dataclass(frozen=True)
class ProviderRates:
    """Per-million-token prices in USD."""

    input: float
    output: float


PROVIDER_RATES: dict[str, ProviderRates] = {
    "gemini": ProviderRates(input=0.075, output=0.3),
    "openai": ProviderRates(input=2.5, output=10.0),
    "anthropic": ProviderRates(input=3.0, output=15.0),
}

DEFAULT_RATES = ProviderRates(input=0.1, output=0.3)
"""Rates applied to providers missing from the table."""


def cost_for(
    provider_id: str,
    prompt_tokens: int,
    completion_tokens: int,
    rates: Mapping[str, ProviderRates] | None = None,
) -> float:
    """Estimated cost of a call in USD."""
    table = rates if rates is not None else PROVIDER_RATES
    rate = table.get(provider_id, DEFAULT_RATES)
    return (prompt_tokens / TOKENS_PER_MILLION) * rate.input + (completion_tokens / TOKENS_PER_MILLION) * rate.output


@dataclass(frozen=True)
class ProviderUsage:
    """Accumulated counters for one provider."""

    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, prompt_tokens: int, completion_tokens: int, cost: float) -> ProviderUsage:
        return ProviderUsage(
            calls=self.calls + 1,
            prompt_tokens=self.prompt_tokens + prompt_tokens,
            completion_tokens=self.completion_tokens + completion_tokens,
            estimated_cost=self.estimated_cost + cost,
        )

    def to_dict(self) -> dict[str, float | int]:
        return {
            "calls": self.calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
        }


@dataclass(frozen=True)
class UsageRecord:
    """Snapshot of a ledger.

    Attributes:
        prompt_tokens: Prompt/input tokens across all providers
        completion_tokens: Completion/output tokens across all providers
        estimated_cost: Running cost estimate in USD
        by_provider: Per-provider breakdown
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost: float = 0.0
    by_provider: Mapping[str, ProviderUsage] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, object]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": round(self.estimated_cost, 6),
            "by_provider": {pid: usage.to_dict() for pid, usage in self.by_provider.items()},
        }


class UsageLedger:
    """Accumulates token counts and derives cost estimates per provider.

    Example:
        >>> ledger = UsageLedger()
        >>> ledger.record("gemini", 1_000_000, 0)
        >>> ledger.snapshot().estimated_cost
        0.075
    """

    def __init__(self, rates: Mapping[str, ProviderRates] | None = None):
        self.rates = dict(rates) if rates is not None else dict(PROVIDER_RATES)
        self._by_provider: dict[str, ProviderUsage] = {}

    def record(self, provider_id: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Add one call's usage and return its estimated cost."""
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("Token counts must be non-negative")

        cost = cost_for(provider_id, prompt_tokens, completion_tokens, self.rates)
        current = self._by_provider.get(provider_id, ProviderUsage())
        self._by_provider[provider_id] = current.add(prompt_tokens, completion_tokens, cost)

        logger.debug(
            "Usage %s: +%d prompt, +%d completion tokens (~$%.6f)",
            provider_id,
            prompt_tokens,
            completion_tokens,
            cost,
        )
        return cost

    def record_usage(self, provider_id: str, usage: TokenUsage) -> float:
        return self.record(provider_id, usage.prompt_tokens, usage.completion_tokens)

    def snapshot(self) -> UsageRecord:
        by_provider = dict(self._by_provider)
        return UsageRecord(
            prompt_tokens=sum(u.prompt_tokens for u in by_provider.values()),
            completion_tokens=sum(u.completion_tokens for u in by_provider.values()),
            estimated_cost=sum(u.estimated_cost for u in by_provider.values()),
            by_provider=MappingProxyType(by_provider),
        )

    def reset(self) -> None:
        self._by_provider.clear()
