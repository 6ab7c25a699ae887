"""Cooperative cancellation signal threaded through one analysis job."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from orchestrator.exceptions import OperationCancelledError

logger = logging.getLogger(__name__)

__all__ = ["CancellationToken"]

T = TypeVar("T")


class CancellationToken:
    """Single cancellation signal shared by every suspension point of a job.

    Suspension points (provider awaits, inter-batch pacing, stage timeouts,
    retry backoff) go through ``guard`` or ``sleep`` so that ``cancel()``
    abandons whatever is currently awaited.

    Example:
        >>> token = CancellationToken()
        >>> job_task = asyncio.create_task(job.run(pages, token=token))
        >>> token.cancel("user closed the upload")
        >>> report = await job_task
        >>> report.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelledError: If the token fires before completion;
                the in-flight task is cancelled.
        """
        if self.cancelled and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise OperationCancelledError(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until cancellation, whichever is first."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        await self.guard(asyncio.sleep(seconds))
