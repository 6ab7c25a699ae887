"""Dependency-ordered execution of stages for one batch.

Stages are ordered by a depth-first topological sort with an explicit
visiting set. Cycles are rejected when the offending stage is registered;
dangling dependencies are rejected when a run starts. Each stage races a
timeout, and a timed-out or failed stage becomes a failed ``StageResult``
rather than an exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from orchestrator.exceptions import (
    InvalidConfigError,
    OperationCancelledError,
    StageDependencyError,
    StageGraphError,
    StageTimeoutError,
)
from orchestrator.misc import elapsed_ms
from orchestrator.resilience.retry import classify_error
from orchestrator.stages.base import ProcessingContext, StageDefinition, StageResult

if TYPE_CHECKING:
    from orchestrator.resilience.fallback import ProviderAttempt

logger = logging.getLogger(__name__)

__all__ = ["PipelineOptions", "PipelineProgress", "StagePipeline"]


@dataclass(frozen=True)
class PipelineOptions:
    """Pipeline tuning.

    Attributes:
        continue_on_error: Keep going after a failed stage; stages whose
            dependencies failed get a synthetic failed result instead of running
        skip_completed: Skip stages already completed (e.g. restored from a checkpoint)
        timeout_multiplier: Scales every stage timeout (thorough mode uses > 1)
    """

    continue_on_error: bool = False
    skip_completed: bool = True
    timeout_multiplier: float = 1.0

    def validate(self) -> None:
        if self.timeout_multiplier <= 0:
            raise InvalidConfigError(f"timeout_multiplier must be positive, got {self.timeout_multiplier}")


@dataclass(frozen=True)
class PipelineProgress:
    completed: int
    total: int
    current_stage: str | None = None

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 0
        return round(self.completed / self.total * 100)


ProgressCallback = Callable[[PipelineProgress], None]


class StagePipeline:
    """Runs registered stages in dependency order for one unit of work.

    Completion state is per unit of work: call ``reset()`` between batches.

    Example:
        >>> pipeline = StagePipeline(options=PipelineOptions(continue_on_error=True))
        >>> pipeline.register(StageDefinition("overview", overview))
        >>> pipeline.register(StageDefinition("characters", characters, dependencies=("overview",)))
        >>> results = await pipeline.run(context)
        >>> results["characters"].success
        True
    """

    def __init__(
        self,
        stages: Iterable[StageDefinition] = (),
        options: PipelineOptions | None = None,
    ):
        self.options = options or PipelineOptions()
        self.options.validate()
        self._stages: dict[str, StageDefinition] = {}
        self._completed: set[str] = set()
        self._results: dict[str, StageResult] = {}
        self._current: str | None = None

        for stage in stages:
            self.register(stage)

    @property
    def stages(self) -> list[StageDefinition]:
        return list(self._stages.values())

    def register(self, stage: StageDefinition) -> None:
        """Register a stage.

        Raises:
            StageGraphError: On a duplicate id or if the stage closes a cycle
        """
        if stage.id in self._stages:
            raise StageGraphError(stage.id, "Stage is already registered")
        if stage.id in stage.dependencies:
            raise StageGraphError(stage.id, "Stage depends on itself")

        self._stages[stage.id] = stage
        try:
            self._topological_order(allow_unknown=True)
        except StageGraphError:
            del self._stages[stage.id]
            raise
        logger.debug("Registered stage %s (depends on %s)", stage.id, list(stage.dependencies) or "nothing")

    def execution_order(self) -> list[StageDefinition]:
        """Stages in topological order.

        Raises:
            StageGraphError: If a dependency is not registered
        """
        return self._topological_order(allow_unknown=False)

    def _topological_order(self, allow_unknown: bool) -> list[StageDefinition]:
        visited: set[str] = set()
        visiting: set[str] = set()
        order: list[StageDefinition] = []

        def visit(stage: StageDefinition, path: list[str]) -> None:
            if stage.id in visited:
                return
            if stage.id in visiting:
                cycle = " -> ".join([*path, stage.id])
                raise StageGraphError(stage.id, f"Dependency cycle: {cycle}")

            visiting.add(stage.id)
            for dep_id in stage.dependencies:
                dep = self._stages.get(dep_id)
                if dep is None:
                    if allow_unknown:
                        continue
                    raise StageGraphError(stage.id, f"Unknown dependency: {dep_id}")
                visit(dep, [*path, stage.id])
            visiting.discard(stage.id)
            visited.add(stage.id)
            order.append(stage)

        for stage in self._stages.values():
            visit(stage, [])
        return order

    def mark_completed(self, stage_id: str, payload: object = None) -> None:
        """Record a stage as completed without running it."""
        self._completed.add(stage_id)
        self._results[stage_id] = StageResult.ok(stage_id, payload)

    def is_completed(self, stage_id: str) -> bool:
        return stage_id in self._completed

    def reset(self) -> None:
        self._completed.clear()
        self._results.clear()
        self._current = None

    @property
    def results(self) -> dict[str, StageResult]:
        return dict(self._results)

    @property
    def progress(self) -> PipelineProgress:
        return PipelineProgress(
            completed=len(self._completed & self._stages.keys()),
            total=len(self._stages),
            current_stage=self._current,
        )

    async def run(
        self,
        context: ProcessingContext,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, StageResult]:
        """Run every registered stage for one batch.

        Args:
            context: Batch context; ``previous_results`` is filled in as stages complete
            on_progress: Called after each stage

        Returns:
            Stage id -> StageResult for every stage that ran, was skipped as
            completed, or was recorded as failed. Without ``continue_on_error``
            the run stops at the first failed stage.

        Raises:
            StageGraphError: If a dependency is not registered
            StageDependencyError: If dependencies are unsatisfied and
                ``continue_on_error`` is off
            OperationCancelledError: If the job's token fires
        """
        order = self.execution_order()

        for stage_id in self._completed:
            result = self._results.get(stage_id)
            if result is not None and result.success:
                context.previous_results.setdefault(stage_id, result.payload)

        for stage in order:
            if context.token is not None:
                context.token.raise_if_cancelled()

            if self.options.skip_completed and stage.id in self._completed:
                logger.debug("Skipping completed stage %s", stage.id)
                continue

            missing = [dep for dep in stage.dependencies if dep not in self._completed]
            if missing:
                message = f"Dependencies not satisfied: {', '.join(missing)}"
                if not self.options.continue_on_error:
                    raise StageDependencyError(stage.id, message)
                logger.warning("Stage %s skipped (batch %d): %s", stage.id, context.batch_index, message)
                self._results[stage.id] = StageResult.failed(stage.id, message)
                self._notify(on_progress)
                continue

            self._current = stage.id
            result = await self._run_stage(stage, context)
            self._results[stage.id] = result
            self._current = None

            if result.success:
                self._completed.add(stage.id)
                context.previous_results[stage.id] = result.payload
                logger.info(
                    "Stage %s completed for batch %d in %.0fms",
                    stage.id,
                    context.batch_index,
                    result.duration_ms,
                )
            else:
                logger.error("Stage %s failed for batch %d: %s", stage.id, context.batch_index, result.error)

            self._notify(on_progress)

            if not result.success and not self.options.continue_on_error:
                break

        return dict(self._results)

    async def _run_stage(self, stage: StageDefinition, context: ProcessingContext) -> StageResult:
        timeout_s = stage.timeout_s * self.options.timeout_multiplier
        start = time.perf_counter()

        try:
            work = asyncio.wait_for(stage.process(context), timeout=timeout_s)
            if context.token is not None:
                outcome = await context.token.guard(work)
            else:
                outcome = await work
        except OperationCancelledError:
            raise
        except TimeoutError:
            error = StageTimeoutError(stage.id, f"Timed out after {timeout_s:.1f}s")
            history = self._partial_history(stage, context)
            return StageResult.failed(stage.id, str(error), elapsed_ms(start), history=history)
        except Exception as e:
            logger.debug("Stage %s raised", stage.id, exc_info=True)
            return StageResult.failed(
                stage.id,
                str(e),
                elapsed_ms(start),
                error_kind=classify_error(e),
                history=self._partial_history(stage, context),
            )

        duration_ms = elapsed_ms(start)
        if isinstance(outcome, StageResult):
            return StageResult(
                stage_id=stage.id,
                success=outcome.success,
                payload=outcome.payload,
                error=outcome.error,
                error_kind=outcome.error_kind,
                duration_ms=duration_ms,
                history=outcome.history,
            )
        return StageResult.ok(stage.id, outcome, duration_ms)

    @staticmethod
    def _partial_history(stage: StageDefinition, context: ProcessingContext) -> tuple[ProviderAttempt, ...]:
        return tuple(context.provider_history.get(stage.id, ()))

    def _notify(self, on_progress: ProgressCallback | None) -> None:
        if on_progress is not None:
            on_progress(self.progress)
