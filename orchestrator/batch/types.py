"""Data types for batch planning and overlapping batch ranges."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderLimits:
    """Batch-relevant capability limits of one provider.

    Attributes:
        max_items_per_call: Hard cap on images per request
        max_payload_kb: Request payload budget in KB
        max_tokens_per_request: Context window in tokens
        recommended_batch_size: Preferred images per request
    """

    max_items_per_call: int
    max_payload_kb: int
    max_tokens_per_request: int
    recommended_batch_size: int


@dataclass(frozen=True)
class BatchPlan:
    """Batch configuration computed for one unit of work.

    Attributes:
        total_items: Number of input items (pages)
        batch_size: Items per provider call
        overlap_size: Items repeated between adjacent batches
        total_batches: Number of batches covering the input
        estimated_seconds: User-facing wall-clock estimate only
        provider_id: Provider the plan was computed for
        thorough: Whether thorough mode shrank the batches
    """

    total_items: int
    batch_size: int
    overlap_size: int
    total_batches: int
    estimated_seconds: int
    provider_id: str | None = None
    thorough: bool = False

    @property
    def step(self) -> int:
        """Distance between the starts of adjacent batches."""
        return self.batch_size - self.overlap_size

    @property
    def estimated_minutes(self) -> int:
        return math.ceil(self.estimated_seconds / 60)

    def to_dict(self) -> dict[str, object]:
        return {
            "total_items": self.total_items,
            "batch_size": self.batch_size,
            "overlap_size": self.overlap_size,
            "total_batches": self.total_batches,
            "estimated_seconds": self.estimated_seconds,
            "estimated_minutes": self.estimated_minutes,
            "provider_id": self.provider_id,
            "thorough": self.thorough,
        }


@dataclass(frozen=True)
class BatchRange:
    """A contiguous, inclusive slice of input items for one provider call.

    Attributes:
        index: Batch index (0-based)
        start: First item index (inclusive)
        end: Last item index (inclusive)
        overlap_start: Items shared with the previous batch (0 for the first)
        overlap_end: Items shared with the next batch (0 for the last)
        is_first: Whether this is the first batch
        is_last: Whether this is the last batch
    """

    index: int
    start: int
    end: int
    overlap_start: int
    overlap_end: int
    is_first: bool
    is_last: bool

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def indices(self) -> range:
        return range(self.start, self.end + 1)

    def take(self, items: Sequence[T]) -> list[T]:
        """Return the items covered by this range."""
        return list(items[self.start : self.end + 1])

    def __contains__(self, item_index: object) -> bool:
        return isinstance(item_index, int) and self.start <= item_index <= self.end
