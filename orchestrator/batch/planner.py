"""Batch size planning per provider.

Computes batch size, overlap size and batch count for a unit of work from
provider capability limits and the measured (or assumed) page size. The
arithmetic is pure; callers validate ``total_items > 0`` before planning.

Usage:
    >>> planner = BatchPlanner()
    >>> plan = planner.plan(100, PROVIDER_LIMITS["gemini"], average_item_kb=150)
    >>> plan.batch_size, plan.overlap_size, plan.total_batches
    (12, 1, 9)
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence

from orchestrator.batch.types import BatchPlan, ProviderLimits
from orchestrator.constants import (
    DEFAULT_AVERAGE_ITEM_KB,
    ESTIMATED_COMPLETION_TOKENS_PER_PAGE,
    ESTIMATED_PROMPT_TOKENS_PER_PAGE,
    MIN_BATCH_SIZE,
    MIN_ITEM_SIZE_KB,
    OVERLAP_FRACTION,
    SECONDS_PER_BATCH,
    THOROUGH_BATCH_FACTOR,
    THOROUGH_SECONDS_PER_BATCH,
)
from orchestrator.tracking.usage import PROVIDER_RATES, ProviderRates, cost_for

logger = logging.getLogger(__name__)

__all__ = ["BatchPlanner", "PROVIDER_LIMITS", "estimate_cost"]


PROVIDER_LIMITS: dict[str, ProviderLimits] = {
    "gemini": ProviderLimits(
        max_items_per_call=16,
        max_payload_kb=2048,
        max_tokens_per_request=1_048_576,
        recommended_batch_size=12,
    ),
    "openai": ProviderLimits(
        max_items_per_call=8,
        max_payload_kb=1024,
        max_tokens_per_request=128_000,
        recommended_batch_size=6,
    ),
    "anthropic": ProviderLimits(
        max_items_per_call=10,
        max_payload_kb=1536,
        max_tokens_per_request=200_000,
        recommended_batch_size=8,
    ),
}
"""Built-in limits, overridable from settings/providers.yaml."""

DEFAULT_PROVIDER = "gemini"


class BatchPlanner:
    """Plans batches for a unit of work.

    Attributes:
        limits: Provider id -> limits table (unknown providers use gemini's)
        max_batch_size: Optional configured cap on batch size
        overlap_size: Optional configured overlap, overriding the 15% rule
    """

    def __init__(
        self,
        limits: Mapping[str, ProviderLimits] | None = None,
        max_batch_size: int | None = None,
        overlap_size: int | None = None,
    ):
        self.limits = dict(limits) if limits is not None else dict(PROVIDER_LIMITS)
        self.max_batch_size = max_batch_size
        self.overlap_size = overlap_size

    def limits_for(self, provider_id: str | None) -> ProviderLimits:
        if provider_id and provider_id in self.limits:
            return self.limits[provider_id]
        return self.limits.get(DEFAULT_PROVIDER, PROVIDER_LIMITS[DEFAULT_PROVIDER])

    def plan(
        self,
        total_items: int,
        limits: ProviderLimits | None = None,
        average_item_kb: float = DEFAULT_AVERAGE_ITEM_KB,
        thorough: bool = False,
        detail_level: str = "deep",
        provider_id: str | None = None,
    ) -> BatchPlan:
        """Compute the batch plan.

        Args:
            total_items: Number of items to process (caller guarantees > 0)
            limits: Provider limits (defaults to the table entry for provider_id)
            average_item_kb: Average item payload size in KB
            thorough: Shrink batches for deeper per-item analysis
            detail_level: Thorough detail level ("deep" or "exhaustive")
            provider_id: Provider the plan is computed for

        Returns:
            BatchPlan
        """
        if limits is None:
            limits = self.limits_for(provider_id)

        batch_size = self.batch_size(limits, average_item_kb, thorough)
        overlap_size = self._overlap_for(batch_size)

        step = batch_size - overlap_size
        total_batches = max(1, math.ceil((total_items - overlap_size) / step))

        if thorough:
            per_batch = THOROUGH_SECONDS_PER_BATCH.get(detail_level, THOROUGH_SECONDS_PER_BATCH["exhaustive"])
        else:
            per_batch = SECONDS_PER_BATCH

        plan = BatchPlan(
            total_items=total_items,
            batch_size=batch_size,
            overlap_size=overlap_size,
            total_batches=total_batches,
            estimated_seconds=total_batches * per_batch,
            provider_id=provider_id,
            thorough=thorough,
        )
        logger.debug(
            "Planned %d items for %s: batch=%d overlap=%d batches=%d",
            total_items,
            provider_id or "default",
            batch_size,
            overlap_size,
            total_batches,
        )
        return plan

    def batch_size(self, limits: ProviderLimits, average_item_kb: float, thorough: bool = False) -> int:
        """Batch size from recommended size, payload budget and hard cap."""
        size_adjusted = math.floor(limits.max_payload_kb / max(average_item_kb, MIN_ITEM_SIZE_KB))
        batch_size = min(limits.recommended_batch_size, size_adjusted, limits.max_items_per_call)

        if thorough:
            batch_size = max(MIN_BATCH_SIZE, math.floor(batch_size * THOROUGH_BATCH_FACTOR))

        if self.max_batch_size is not None:
            batch_size = min(batch_size, self.max_batch_size)

        return max(MIN_BATCH_SIZE, batch_size)

    def _overlap_for(self, batch_size: int) -> int:
        overlap = max(1, math.floor(batch_size * OVERLAP_FRACTION))
        if self.overlap_size is not None:
            overlap = self.overlap_size
        if overlap >= batch_size:
            logger.warning("Overlap %d does not fit batch size %d; using %d", overlap, batch_size, batch_size - 1)
            overlap = batch_size - 1
        return overlap

    def compare_providers(
        self,
        provider_ids: Sequence[str],
        total_items: int,
        average_item_kb: float = DEFAULT_AVERAGE_ITEM_KB,
    ) -> list[BatchPlan]:
        """Plan the same work for several providers, fewest batches first."""
        plans = [
            self.plan(total_items, average_item_kb=average_item_kb, provider_id=provider_id)
            for provider_id in provider_ids
        ]
        return sorted(plans, key=lambda plan: plan.total_batches)


def estimate_cost(
    total_items: int,
    provider_id: str,
    thorough: bool = False,
    rates: Mapping[str, ProviderRates] | None = None,
) -> dict[str, float]:
    """Rough pre-run token and cost estimate.

    Args:
        total_items: Number of pages
        provider_id: Provider whose rates apply
        thorough: Use thorough-mode per-page token estimates
        rates: Rate table (defaults to PROVIDER_RATES)

    Returns:
        Dict with prompt_tokens, completion_tokens, estimated_tokens, estimated_cost
    """
    mode = "thorough" if thorough else "standard"
    prompt_tokens = total_items * ESTIMATED_PROMPT_TOKENS_PER_PAGE[mode]
    completion_tokens = total_items * ESTIMATED_COMPLETION_TOKENS_PER_PAGE[mode]
    table = rates if rates is not None else PROVIDER_RATES

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "estimated_tokens": prompt_tokens + completion_tokens,
        "estimated_cost": cost_for(provider_id, prompt_tokens, completion_tokens, table),
    }
