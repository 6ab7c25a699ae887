"""Overlapping batch ranges and cross-batch result merging.

Adjacent batches share ``overlap_size`` items so that the model sees the end
of the previous batch again. Results are deduplicated by stable item
identity: the highest-confidence duplicate wins and ties favor the later
batch, which had more context available. Entity states seen in one batch are
carried forward as continuity hints for the next ones.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, TypeVar

from orchestrator.batch.types import BatchRange
from orchestrator.constants import CONTINUITY_WINDOW

logger = logging.getLogger(__name__)

__all__ = [
    "EntityState",
    "OverlapContext",
    "OverlapCoordinator",
    "generate_ranges",
    "merge_results",
]

T = TypeVar("T")


def generate_ranges(total: int, batch_size: int, overlap_size: int) -> list[BatchRange]:
    """Generate inclusive batch ranges with overlap.

    Range ``i`` covers ``[i*step, min(i*step + batch_size - 1, total - 1)]``
    with ``step = batch_size - overlap_size``.

    Args:
        total: Number of items (must be > 0)
        batch_size: Items per batch
        overlap_size: Items shared by adjacent batches (0 <= overlap < batch)

    Returns:
        Ranges covering ``[0, total - 1]`` without gaps

    Raises:
        ValueError: If the arguments cannot produce a positive step

    Example:
        >>> ranges = generate_ranges(100, 12, 2)
        >>> (ranges[0].start, ranges[0].end), (ranges[1].start, ranges[1].end)
        ((0, 11), (10, 21))
    """
    if total <= 0:
        raise ValueError(f"total must be positive, got {total}")
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    if not 0 <= overlap_size < batch_size:
        raise ValueError(f"overlap_size must be in [0, {batch_size}), got {overlap_size}")

    step = batch_size - overlap_size
    count = max(1, math.ceil((total - overlap_size) / step))

    ranges: list[BatchRange] = []
    for i in range(count):
        start = i * step
        end = min(start + batch_size - 1, total - 1)
        ranges.append(
            BatchRange(
                index=i,
                start=start,
                end=end,
                overlap_start=0 if i == 0 else overlap_size,
                overlap_end=0 if i == count - 1 else overlap_size,
                is_first=i == 0,
                is_last=i == count - 1,
            )
        )
    return ranges


def _item_identity(item: Any) -> Hashable:
    if isinstance(item, Mapping):
        return item["id"]
    return item.id


def _item_confidence(item: Any) -> float:
    if isinstance(item, Mapping):
        return float(item.get("confidence", 0.0))
    return float(item.confidence)


def merge_results(
    batches: Iterable[Iterable[T]],
    key: Callable[[T], Hashable] = _item_identity,
    score: Callable[[T], float] = _item_confidence,
) -> list[T]:
    """Merge per-batch results by identity.

    The highest score wins; on a tie the later batch wins. Output order is
    the order in which identities were first seen, so identical inputs give
    identical outputs and merging a result set with itself is a no-op.

    Args:
        batches: Results per batch, in batch order
        key: Stable identity of an item
        score: Confidence of an item

    Returns:
        Deduplicated items
    """
    merged: dict[Hashable, T] = {}
    for batch in batches:
        for item in batch:
            identity = key(item)
            existing = merged.get(identity)
            if existing is None or score(item) >= score(existing):
                merged[identity] = item
    return list(merged.values())


@dataclass(frozen=True)
class EntityState:
    """Last known state of a recurring entity."""

    entity_id: str
    last_seen_batch: int
    state: str
    confidence: float


@dataclass(frozen=True)
class OverlapContext:
    """Continuity carried into one batch.

    Attributes:
        batch_index: Batch the context was created for
        previous_tail_items: Items repeated from the end of the previous batch
        carried_entity_states: Entity states known when the batch started
    """

    batch_index: int
    previous_tail_items: tuple[Any, ...] = ()
    carried_entity_states: Mapping[str, EntityState] = field(default_factory=lambda: MappingProxyType({}))


class OverlapCoordinator:
    """Tracks continuity across sequential batches of one job.

    Example:
        >>> coordinator = OverlapCoordinator()
        >>> ctx = coordinator.initialize_batch(0)
        >>> coordinator.update_continuity(0, [{"id": "hero", "state": "injured", "confidence": 0.9}])
        >>> ctx = coordinator.initialize_batch(1, previous_tail=["page-11"])
        >>> sorted(coordinator.continuity_hints(1))
        ['hero']
    """

    def __init__(self, window: int = CONTINUITY_WINDOW):
        self.window = window
        self._contexts: dict[int, OverlapContext] = {}
        self._entity_states: dict[str, EntityState] = {}

    @property
    def entity_states(self) -> Mapping[str, EntityState]:
        return MappingProxyType(self._entity_states)

    def initialize_batch(self, batch_index: int, previous_tail: Sequence[Any] | None = None) -> OverlapContext:
        """Create the context for a batch from the current entity states."""
        context = OverlapContext(
            batch_index=batch_index,
            previous_tail_items=tuple(previous_tail or ()),
            carried_entity_states=MappingProxyType(dict(self._entity_states)),
        )
        self._contexts[batch_index] = context
        return context

    def context_for(self, batch_index: int) -> OverlapContext | None:
        return self._contexts.get(batch_index)

    def update_continuity(self, batch_index: int, entities: Iterable[Any]) -> None:
        """Record entities seen in a batch.

        ``last_seen_batch`` always advances; the stored state and confidence
        are only replaced by an observation at least as confident.

        Args:
            batch_index: Batch that observed the entities
            entities: Items with ``id``, ``confidence`` and an optional ``state``
        """
        for entity in entities:
            entity_id = str(_item_identity(entity))
            confidence = _item_confidence(entity)
            state = _entity_state_text(entity)

            existing = self._entity_states.get(entity_id)
            if existing is None or confidence >= existing.confidence:
                updated = EntityState(entity_id, batch_index, state, confidence)
            else:
                updated = replace(existing, last_seen_batch=max(existing.last_seen_batch, batch_index))
            self._entity_states[entity_id] = updated

    def continuity_hints(self, batch_index: int) -> dict[str, EntityState]:
        """Entities last seen within ``window`` batches of ``batch_index``.

        Uses the context captured when the batch was initialized, or the
        current states if the batch has no context yet. Older entries stay in
        the underlying state; they are only excluded from the hint set.
        """
        context = self._contexts.get(batch_index)
        states = context.carried_entity_states if context is not None else self._entity_states
        return {
            entity_id: state
            for entity_id, state in states.items()
            if batch_index - state.last_seen_batch <= self.window
        }

    def resolve_conflicts(self, previous: Sequence[T], current: Sequence[T]) -> list[T]:
        """Pairwise merge of two adjacent batches' results."""
        return merge_results([previous, current])

    def clear(self) -> None:
        self._contexts.clear()
        self._entity_states.clear()


def _entity_state_text(entity: Any) -> str:
    if isinstance(entity, Mapping):
        return str(entity.get("state", ""))
    data = getattr(entity, "data", None)
    if isinstance(data, Mapping):
        return str(data.get("state") or data.get("description") or data.get("name") or "")
    return str(getattr(entity, "state", ""))
