"""Job-level progress and metrics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from orchestrator.misc import tz_now

__all__ = ["JobProgress"]


@dataclass
class JobProgress:
    """Progress tracking for one analysis job.

    Owned by a single job, so it is mutated in place without locking.

    Attributes:
        total_batches: Number of batches planned
        completed_batches: Batches whose stages all succeeded
        failed_batches: Batches with at least one failed stage
        current_batch: Index of the batch being processed
        current_stage: Stage currently running
        retries: Retry attempts spent across all provider calls
        fallback_switches: Provider switches across all provider calls
        started_at: Job start time
        finished_at: Job end time
    """

    total_batches: int
    completed_batches: int = 0
    failed_batches: int = 0
    current_batch: int | None = None
    current_stage: str | None = None
    retries: int = 0
    fallback_switches: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def processed_batches(self) -> int:
        return self.completed_batches + self.failed_batches

    @property
    def progress_pct(self) -> float:
        """Progress percentage (0-100)."""
        if self.total_batches == 0:
            return 0.0
        return (self.processed_batches / self.total_batches) * 100

    @property
    def is_complete(self) -> bool:
        return self.processed_batches >= self.total_batches

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or tz_now()
        return (end - self.started_at).total_seconds()

    def start(self) -> None:
        self.started_at = tz_now()
        self.finished_at = None

    def begin_batch(self, batch_index: int) -> None:
        self.current_batch = batch_index
        self.current_stage = None

    def set_stage(self, stage_id: str | None) -> None:
        self.current_stage = stage_id

    def complete_batch(self, failed: bool = False) -> None:
        if failed:
            self.failed_batches += 1
        else:
            self.completed_batches += 1
        self.current_stage = None

    def record_call(self, retries: int, switches: int) -> None:
        self.retries += retries
        self.fallback_switches += switches

    def finish(self) -> None:
        self.finished_at = tz_now()
        self.current_batch = None
        self.current_stage = None

    def to_dict(self) -> dict[str, object]:
        return {
            "total_batches": self.total_batches,
            "completed_batches": self.completed_batches,
            "failed_batches": self.failed_batches,
            "progress_pct": round(self.progress_pct, 1),
            "retries": self.retries,
            "fallback_switches": self.fallback_switches,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }
