"""Sequential batch processing with inter-batch pacing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from orchestrator.constants import DEFAULT_DELAY_BETWEEN_BATCHES_MS
from orchestrator.exceptions import OperationCancelledError
from orchestrator.misc import ms_to_seconds

if TYPE_CHECKING:
    from orchestrator.batch.types import BatchRange
    from orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)

__all__ = ["BatchOutcome", "BatchProcessor", "BatchRun"]

T = TypeVar("T")

BatchHandler = Callable[["BatchRange", list[Any]], Awaitable[T]]
BatchCallback = Callable[["BatchOutcome[T]", int], None]


@dataclass(frozen=True)
class BatchOutcome(Generic[T]):
    """Result of one batch.

    Attributes:
        batch: The batch range
        value: Handler result on success
        error: Error message if the handler raised
    """

    batch: BatchRange
    value: T | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class BatchRun(Generic[T]):
    """Outcomes of every batch that was started, in index order."""

    outcomes: tuple[BatchOutcome[T], ...] = ()
    cancelled: bool = False
    cancel_reason: str | None = None

    @property
    def values(self) -> list[T]:
        return [outcome.value for outcome in self.outcomes if outcome.success]


class BatchProcessor:
    """Runs batches strictly one after another.

    Batches never overlap in time: continuity from batch ``i`` must be
    available to batch ``i + 1``, and providers rate-limit per key. A delay
    is inserted between batches (not after the last one).

    Example:
        >>> processor = BatchProcessor(delay_between_batches_ms=500)
        >>> run = await processor.process(pages, generate_ranges(len(pages), 12, 1), analyze_batch)
        >>> len(run.outcomes)
        9
    """

    def __init__(
        self,
        delay_between_batches_ms: float = DEFAULT_DELAY_BETWEEN_BATCHES_MS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        if delay_between_batches_ms < 0:
            raise ValueError(f"delay_between_batches_ms must be >= 0, got {delay_between_batches_ms}")
        self.delay_between_batches_ms = delay_between_batches_ms
        self.sleep = sleep or asyncio.sleep

    async def process(
        self,
        items: Sequence[Any],
        ranges: Sequence[BatchRange],
        handler: BatchHandler[T],
        token: CancellationToken | None = None,
        on_batch_complete: BatchCallback[T] | None = None,
    ) -> BatchRun[T]:
        """Process every range in index order.

        Args:
            items: All input items of the job
            ranges: Batch ranges (from ``generate_ranges``)
            handler: Async callable receiving the range and its items
            token: Cancellation signal; no batch starts after it fires
            on_batch_complete: Called with each outcome and the batch count

        Returns:
            BatchRun with one outcome per started batch
        """
        outcomes: list[BatchOutcome[T]] = []
        total = len(ranges)

        try:
            for position, batch in enumerate(ranges):
                if token is not None:
                    token.raise_if_cancelled()

                logger.info(
                    "Processing batch %d/%d (items %d-%d)",
                    batch.index + 1,
                    total,
                    batch.start,
                    batch.end,
                )
                try:
                    value = await handler(batch, batch.take(items))
                    outcome: BatchOutcome[T] = BatchOutcome(batch, value=value)
                except OperationCancelledError:
                    raise
                except Exception as e:
                    logger.error("Batch %d failed: %s", batch.index, e)
                    outcome = BatchOutcome(batch, error=f"{type(e).__name__}: {e}")

                outcomes.append(outcome)
                if on_batch_complete is not None:
                    on_batch_complete(outcome, total)

                if position < total - 1 and self.delay_between_batches_ms > 0:
                    await self._pause(ms_to_seconds(self.delay_between_batches_ms), token)

        except OperationCancelledError as e:
            logger.warning("Batch processing cancelled after %d/%d batches: %s", len(outcomes), total, e)
            return BatchRun(tuple(outcomes), cancelled=True, cancel_reason=str(e))

        logger.info("Batch processing complete: %d batches", len(outcomes))
        return BatchRun(tuple(outcomes))

    async def _pause(self, seconds: float, token: CancellationToken | None) -> None:
        if token is None:
            await self.sleep(seconds)
            return
        await token.guard(self.sleep(seconds))
