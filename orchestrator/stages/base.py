"""Stage definitions and per-stage results.

A stage is a named async processing function with declared dependencies on
other stages. Stages run once per batch; each sees the payloads of its
completed dependencies through ``ProcessingContext.previous_results``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from orchestrator.constants import DEFAULT_STAGE_TIMEOUT_S
from orchestrator.types.errors import ErrorKind

if TYPE_CHECKING:
    from orchestrator.batch.overlap import EntityState, OverlapContext
    from orchestrator.batch.types import BatchRange
    from orchestrator.cancellation import CancellationToken
    from orchestrator.resilience.fallback import ProviderAttempt

logger = logging.getLogger(__name__)

__all__ = ["ProcessingContext", "StageDefinition", "StageFunc", "StageResult"]


@dataclass
class ProcessingContext:
    """Everything a stage needs to process one batch.

    Attributes:
        batch: Range of input items covered by this batch
        items: The input items of the batch (page payloads)
        total_batches: Number of batches in the job
        previous_results: Stage id -> payload of completed stages in this batch
        overlap: Continuity carried in from previous batches
        continuity_hints: Recently seen entities, keyed by entity id
        token: Job cancellation signal
        metadata: Free-form job context (job id, thorough settings, ...)
        provider_history: Stage id -> provider attempts recorded so far
    """

    batch: BatchRange
    items: Sequence[Any] = ()
    total_batches: int = 1
    previous_results: dict[str, Any] = field(default_factory=dict)
    overlap: OverlapContext | None = None
    continuity_hints: Mapping[str, EntityState] = field(default_factory=lambda: MappingProxyType({}))
    token: CancellationToken | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    provider_history: dict[str, list[ProviderAttempt]] = field(default_factory=dict)

    @property
    def batch_index(self) -> int:
        return self.batch.index


StageFunc = Callable[[ProcessingContext], Awaitable[Any]]
"""Stage processing function.

May return a plain payload (success) or a ``StageResult`` when it needs to
report a failure as a value, e.g. with the provider history attached.
"""


@dataclass(frozen=True)
class StageDefinition:
    """A named unit of work with declared dependencies.

    Attributes:
        id: Unique stage identifier
        process: Async processing function
        dependencies: Ids of stages that must succeed first in the same batch
        timeout_s: Per-stage timeout before the pipeline's multiplier
        description: Human-readable label
    """

    id: str
    process: StageFunc
    dependencies: tuple[str, ...] = ()
    timeout_s: float = DEFAULT_STAGE_TIMEOUT_S
    description: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Stage id must not be empty")
        if self.timeout_s <= 0:
            raise ValueError(f"Stage {self.id}: timeout_s must be positive, got {self.timeout_s}")
        # Accept any sequence from callers
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r}, dependencies={list(self.dependencies)!r})"


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage execution for one batch.

    Attributes:
        stage_id: Stage that produced the result
        success: Whether the stage completed
        payload: Stage output on success
        error: Error message on failure
        error_kind: Provider error kind when the failure came from a provider
        duration_ms: Wall time of the execution
        history: Provider attempts made by the stage, if any
    """

    stage_id: str
    success: bool
    payload: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: float = 0.0
    history: tuple[ProviderAttempt, ...] = ()

    @property
    def duration_s(self) -> float:
        return self.duration_ms / 1000.0

    @classmethod
    def ok(cls, stage_id: str, payload: Any, duration_ms: float = 0.0) -> StageResult:
        return cls(stage_id=stage_id, success=True, payload=payload, duration_ms=duration_ms)

    @classmethod
    def failed(
        cls,
        stage_id: str,
        error: str,
        duration_ms: float = 0.0,
        error_kind: ErrorKind | None = None,
        history: tuple[ProviderAttempt, ...] = (),
    ) -> StageResult:
        return cls(
            stage_id=stage_id,
            success=False,
            error=error,
            error_kind=error_kind,
            duration_ms=duration_ms,
            history=history,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "success": self.success,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duration_ms": round(self.duration_ms, 2),
            "history": [attempt.to_dict() for attempt in self.history],
        }
