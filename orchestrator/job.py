"""End-to-end analysis job over a set of page images.

Control flow:
    1. Plan batches for the primary provider (BatchPlanner)
    2. Expand the plan into overlapping ranges (generate_ranges)
    3. For each batch, in order: prime continuity, run the stage pipeline
       (each stage calls the ModelGateway), record continuity and failures
    4. After all batches: merge each stage's items across batches
    5. Report merged results, failures with provider history, usage and progress

Example:
    >>> gateway = ModelGateway([gemini, openai])
    >>> job = AnalysisJob(gateway, build_analysis_stages(gateway))
    >>> report = await job.run(pages)
    >>> report.stage_results["characters"]
    [AnalysisItem(id='hero', ...), ...]
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from orchestrator.batch.overlap import OverlapCoordinator, generate_ranges, merge_results
from orchestrator.batch.planner import BatchPlanner
from orchestrator.batch.processor import BatchProcessor
from orchestrator.batch.types import BatchPlan, BatchRange
from orchestrator.cancellation import CancellationToken
from orchestrator.checkpoint import JobCheckpoint
from orchestrator.constants import CONTINUITY_WINDOW, DEFAULT_AVERAGE_ITEM_KB
from orchestrator.exceptions import StageDependencyError
from orchestrator.gateway import ModelGateway
from orchestrator.resilience.fallback import ProviderAttempt
from orchestrator.stages.analysis import CONTINUITY_STAGE, ThoroughConfig
from orchestrator.stages.base import ProcessingContext, StageDefinition, StageResult
from orchestrator.stages.pipeline import PipelineOptions, StagePipeline
from orchestrator.tracking.progress import JobProgress
from orchestrator.tracking.usage import UsageRecord
from orchestrator.types.errors import ErrorKind
from orchestrator.types.items import PageItem

logger = logging.getLogger(__name__)

__all__ = ["AnalysisJob", "BatchFailure", "JobReport"]


@dataclass(frozen=True)
class BatchFailure:
    """Which stage failed in which batch, and why.

    Attributes:
        batch_index: Failed batch
        stage_id: Failed stage
        error: Error message
        error_kind: Provider error kind, when a provider caused the failure
        history: Provider attempts leading to the failure
    """

    batch_index: int
    stage_id: str
    error: str
    error_kind: ErrorKind | None = None
    history: tuple[ProviderAttempt, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "stage_id": self.stage_id,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "history": [attempt.to_dict() for attempt in self.history],
        }


@dataclass
class JobReport:
    """Outcome of an analysis job.

    Attributes:
        plan: Batch plan the job ran with
        stage_results: Stage id -> items merged across batches
        batch_results: Per-batch stage results, in batch order
        batch_indices: Batch index of each ``batch_results`` entry (batches
            whose handler failed have no entry)
        failures: Stage failures per batch
        usage: Usage snapshot at the end of the job
        progress: Final job progress
        cancelled: Whether the job was cancelled
        cancel_reason: Cancellation reason
    """

    plan: BatchPlan
    stage_results: dict[str, Any] = field(default_factory=dict)
    batch_results: list[dict[str, StageResult]] = field(default_factory=list)
    batch_indices: list[int] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)
    usage: UsageRecord = field(default_factory=UsageRecord)
    progress: JobProgress | None = None
    cancelled: bool = False
    cancel_reason: str | None = None

    @property
    def success(self) -> bool:
        return not self.failures and not self.cancelled

    @property
    def partial_results_usable(self) -> bool:
        """Whether any stage completed for any batch."""
        return any(result.success for batch in self.batch_results for result in batch.values())

    @property
    def provider_history(self) -> list[dict[str, Any]]:
        """Every provider attempt of the job, in order."""
        history: list[dict[str, Any]] = []
        for batch_index, batch in zip(self.batch_indices, self.batch_results, strict=True):
            for stage_id, result in batch.items():
                for attempt in result.history:
                    history.append({"batch_index": batch_index, "stage_id": stage_id, **attempt.to_dict()})
        return history

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "partial_results_usable": self.partial_results_usable,
            "plan": self.plan.to_dict(),
            "stage_results": {
                stage_id: [item.to_dict() if hasattr(item, "to_dict") else item for item in items]
                if isinstance(items, list)
                else items
                for stage_id, items in self.stage_results.items()
            },
            "batches": [
                {
                    "batch_index": batch_index,
                    "stages": {stage_id: result.to_dict() for stage_id, result in batch.items()},
                }
                for batch_index, batch in zip(self.batch_indices, self.batch_results, strict=True)
            ],
            "failures": [failure.to_dict() for failure in self.failures],
            "usage": self.usage.to_dict(),
            "progress": self.progress.to_dict() if self.progress else None,
        }


class AnalysisJob:
    """Runs a stage graph over all batches of one upload.

    A job instance owns its batch ranges, overlap state, stage results and
    progress. The gateway's circuit breakers and priority manager may be
    shared with other jobs.

    Attributes:
        gateway: Model gateway used by the stages
        stages: Stage graph
        planner: Batch planner
        processor: Sequential batch processor
        pipeline_options: Stage pipeline tuning
        thorough: Thorough-mode settings (planning, and the job time budget
            enforced between batches)
        checkpoint: Optional checkpoint for resume
    """

    def __init__(
        self,
        gateway: ModelGateway,
        stages: Sequence[StageDefinition],
        planner: BatchPlanner | None = None,
        processor: BatchProcessor | None = None,
        pipeline_options: PipelineOptions | None = None,
        thorough: ThoroughConfig | None = None,
        checkpoint: JobCheckpoint | None = None,
        continuity_stage: str | None = CONTINUITY_STAGE,
        continuity_window: int = CONTINUITY_WINDOW,
        clock: Callable[[], float] | None = None,
    ):
        self.gateway = gateway
        self.stages = list(stages)
        self.planner = planner or BatchPlanner()
        self.processor = processor or BatchProcessor()
        self.pipeline_options = pipeline_options or PipelineOptions()
        self.thorough = thorough or ThoroughConfig()
        self.checkpoint = checkpoint
        self.continuity_stage = continuity_stage
        self.continuity_window = continuity_window
        self._clock = clock or time.monotonic

    def primary_provider_id(self) -> str | None:
        ranked = self.gateway.ranked_providers()
        usable = [provider for provider in ranked if provider.is_usable()]
        if usable:
            return usable[0].id
        return ranked[0].id if ranked else None

    def plan(self, pages: Sequence[PageItem]) -> BatchPlan:
        """Batch plan for ``pages`` on the primary provider.

        Raises:
            ValueError: If there are no pages
        """
        if not pages:
            raise ValueError("No pages to analyze")

        sizes = [page.size_kb for page in pages if page.size_kb > 0]
        average_kb = sum(sizes) / len(sizes) if sizes else DEFAULT_AVERAGE_ITEM_KB
        return self.planner.plan(
            len(pages),
            average_item_kb=average_kb,
            thorough=self.thorough.enabled,
            detail_level=self.thorough.detail_level,
            provider_id=self.primary_provider_id(),
        )

    async def run(self, pages: Sequence[PageItem], token: CancellationToken | None = None) -> JobReport:
        """Analyze ``pages`` batch by batch.

        Args:
            pages: Input pages in reading order
            token: Cancellation signal; a fresh one is created if omitted

        Returns:
            JobReport; stage failures, exhaustion and cancellation are reported
            in it rather than raised

        Raises:
            ValueError: If there are no pages
            StageGraphError: If the stage graph has dangling dependencies
        """
        token = token or CancellationToken()
        plan = self.plan(pages)
        ranges = generate_ranges(len(pages), plan.batch_size, plan.overlap_size)

        pipeline = StagePipeline(self.stages, self.pipeline_options)
        pipeline.execution_order()

        progress = JobProgress(total_batches=len(ranges))
        progress.start()
        self.gateway.progress = progress

        coordinator = OverlapCoordinator(window=self.continuity_window)
        report = JobReport(plan=plan, progress=progress)

        logger.info(
            "Starting analysis of %d pages: %d batches of %d (overlap %d) on %s",
            len(pages),
            len(ranges),
            plan.batch_size,
            plan.overlap_size,
            plan.provider_id or "default provider",
        )

        started = self._clock()

        async def handle(batch: BatchRange, batch_pages: list[PageItem]) -> dict[str, StageResult]:
            self._check_time_budget(started, token)
            return await self._run_batch(
                batch, batch_pages, len(ranges), pipeline, coordinator, progress, report, token
            )

        try:
            run = await self.processor.process(pages, ranges, handle, token=token)
        finally:
            self.gateway.progress = None
            progress.finish()

        report.cancelled = run.cancelled
        report.cancel_reason = run.cancel_reason
        for outcome in run.outcomes:
            if not outcome.success:
                report.failures.append(BatchFailure(outcome.batch.index, "*", outcome.error or "unknown error"))

        report.stage_results = self._merge_stage_results(report.batch_results)
        report.usage = self.gateway.ledger.snapshot()

        if self.checkpoint is not None and report.success:
            self.checkpoint.mark_complete()

        logger.info(
            "Analysis finished: %d/%d batches ok, %d failures, %d tokens (~$%.4f)%s",
            progress.completed_batches,
            progress.total_batches,
            len(report.failures),
            report.usage.total_tokens,
            report.usage.estimated_cost,
            " [cancelled]" if report.cancelled else "",
        )
        return report

    def _check_time_budget(self, started: float, token: CancellationToken) -> None:
        """Cancel the job once a thorough run has used up its time budget."""
        if not self.thorough.enabled:
            return
        elapsed_s = self._clock() - started
        if not self.thorough.is_within_budget(elapsed_s):
            logger.warning(
                "Thorough analysis exceeded its %d minute budget after %.0fs, stopping",
                self.thorough.timeout_minutes,
                elapsed_s,
            )
            token.cancel(f"Thorough time budget of {self.thorough.timeout_minutes} minutes exceeded")
        token.raise_if_cancelled()

    async def _run_batch(
        self,
        batch: BatchRange,
        batch_pages: list[PageItem],
        total_batches: int,
        pipeline: StagePipeline,
        coordinator: OverlapCoordinator,
        progress: JobProgress,
        report: JobReport,
        token: CancellationToken,
    ) -> dict[str, StageResult]:
        progress.begin_batch(batch.index)

        tail_ids = [page.id for page in batch_pages[: batch.overlap_start]]
        overlap = coordinator.initialize_batch(batch.index, previous_tail=tail_ids)
        context = ProcessingContext(
            batch=batch,
            items=batch_pages,
            total_batches=total_batches,
            overlap=overlap,
            continuity_hints=coordinator.continuity_hints(batch.index),
            token=token,
            metadata={"thorough": self.thorough.enabled, "detail_level": self.thorough.detail_level},
        )

        pipeline.reset()
        if self.checkpoint is not None:
            restored = self.checkpoint.completed_stages(batch.index)
            for stage_id, payload in restored.items():
                pipeline.mark_completed(stage_id, payload)
            if restored:
                logger.info("Batch %d: restored %s from checkpoint", batch.index, ", ".join(sorted(restored)))

        failures: list[BatchFailure] = []
        try:
            results = await pipeline.run(context, on_progress=lambda p: progress.set_stage(p.current_stage))
        except StageDependencyError as e:
            results = pipeline.results
            failures.append(BatchFailure(batch.index, e.stage_name, str(e)))

        for stage_id, result in results.items():
            if not result.success:
                error = result.error or "unknown error"
                failures.append(BatchFailure(batch.index, stage_id, error, result.error_kind, result.history))

        continuity = results.get(self.continuity_stage) if self.continuity_stage else None
        if continuity is not None and continuity.success and isinstance(continuity.payload, list):
            coordinator.update_continuity(batch.index, continuity.payload)

        if self.checkpoint is not None:
            for stage_id, result in results.items():
                if result.success:
                    self.checkpoint.record_stage(batch.index, stage_id, result.payload)
            self.checkpoint.save()

        report.batch_results.append(results)
        report.batch_indices.append(batch.index)
        report.failures.extend(failures)
        progress.complete_batch(failed=bool(failures))
        return results

    @staticmethod
    def _merge_stage_results(batch_results: list[dict[str, StageResult]]) -> dict[str, Any]:
        per_stage: dict[str, list[Any]] = {}
        for results in batch_results:
            for stage_id, result in results.items():
                if result.success:
                    per_stage.setdefault(stage_id, []).append(result.payload)

        merged: dict[str, Any] = {}
        for stage_id, payloads in per_stage.items():
            if all(isinstance(payload, list) for payload in payloads):
                merged[stage_id] = merge_results(payloads)
            else:
                merged[stage_id] = payloads
        return merged
