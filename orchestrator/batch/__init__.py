"""Batch planning, overlapping ranges and sequential batch processing."""

from __future__ import annotations

from .overlap import EntityState, OverlapContext, OverlapCoordinator, generate_ranges, merge_results
from .planner import PROVIDER_LIMITS, BatchPlanner, estimate_cost
from .processor import BatchOutcome, BatchProcessor, BatchRun
from .types import BatchPlan, BatchRange, ProviderLimits

__all__ = [
    # Types
    "BatchPlan",
    "BatchRange",
    "ProviderLimits",
    # Planning
    "BatchPlanner",
    "PROVIDER_LIMITS",
    "estimate_cost",
    # Overlap
    "EntityState",
    "OverlapContext",
    "OverlapCoordinator",
    "generate_ranges",
    "merge_results",
    # Processing
    "BatchOutcome",
    "BatchProcessor",
    "BatchRun",
]
