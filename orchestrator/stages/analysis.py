"""Default analysis stages over page batches.

Each analysis stage sends the batch's page images to the model gateway and
parses the answer into identity-keyed ``AnalysisItem``s. Prompt text is
produced by a pluggable ``PromptBuilder``; the default one only serializes
the stage, batch and continuity context.

In thorough mode every stage runs several passes per batch (detailed
extraction first, cross-validation afterwards) and the passes are merged with
the same identity and confidence policy used across batches.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from orchestrator.batch.overlap import merge_results
from orchestrator.constants import (
    DEFAULT_ITEM_CONFIDENCE,
    DEFAULT_STAGE_TIMEOUT_S,
    SECONDS_PER_BATCH,
    THOROUGH_SECONDS_PER_BATCH,
)
from orchestrator.exceptions import InvalidConfigError
from orchestrator.stages.base import ProcessingContext, StageDefinition, StageResult
from orchestrator.types.items import AnalysisItem
from orchestrator.types.messages import ModelRequest

if TYPE_CHECKING:
    from orchestrator.gateway import ModelGateway
    from orchestrator.resilience.fallback import ProviderAttempt

logger = logging.getLogger(__name__)

__all__ = [
    "ANALYSIS_STAGES",
    "CONTINUITY_STAGE",
    "DETAIL_LEVELS",
    "STAGE_DEPENDENCIES",
    "PromptBuilder",
    "ThoroughConfig",
    "ThoroughPass",
    "build_analysis_stages",
    "default_prompt_builder",
    "make_analysis_stage",
    "parse_items",
]

STAGE_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "overview": (),
    "characters": ("overview",),
    "timeline": ("overview", "characters"),
    "relationships": ("characters",),
    "themes": ("overview", "characters", "timeline"),
}

ANALYSIS_STAGES: tuple[str, ...] = tuple(STAGE_DEPENDENCIES)

CONTINUITY_STAGE = "characters"
"""Stage whose items are tracked as recurring entities across batches."""

DETAIL_LEVELS = ("standard", "deep", "exhaustive")


@dataclass(frozen=True)
class ThoroughPass:
    number: int
    focus: str
    instructions: str = ""


@dataclass(frozen=True)
class ThoroughConfig:
    """Thorough-mode settings.

    Attributes:
        enabled: Run multiple passes per stage
        passes: Number of passes per stage and batch
        cross_validation: Whether passes after the first validate earlier findings
        detail_level: "standard", "deep" or "exhaustive"
        timeout_minutes: Overall time budget of a thorough job
    """

    enabled: bool = False
    passes: int = 2
    cross_validation: bool = True
    detail_level: str = "deep"
    timeout_minutes: int = 15

    def validate(self) -> None:
        if self.detail_level not in DETAIL_LEVELS:
            raise InvalidConfigError(f"Unknown detail level: {self.detail_level} (expected one of {DETAIL_LEVELS})")
        if self.passes < 1:
            raise InvalidConfigError(f"passes must be >= 1, got {self.passes}")

    @classmethod
    def for_detail_level(cls, enabled: bool, detail_level: str = "deep") -> ThoroughConfig:
        """Preset: exhaustive runs 3 passes in 20 minutes, otherwise 2 in 15."""
        exhaustive = detail_level == "exhaustive"
        config = cls(
            enabled=enabled,
            passes=3 if exhaustive else 2,
            detail_level=detail_level,
            timeout_minutes=20 if exhaustive else 15,
        )
        config.validate()
        return config

    def pass_plan(self) -> list[ThoroughPass]:
        if not self.enabled:
            return [ThoroughPass(1, "standard")]
        return [
            ThoroughPass(1, "detailed_extraction", "Extract maximum detail from all visual elements")
            if number == 1
            else ThoroughPass(number, "cross_validation", "Validate and refine previous findings")
            for number in range(1, self.passes + 1)
        ]

    @property
    def progress_weight(self) -> int:
        return self.passes if self.enabled else 1

    def estimate_seconds(self, stage_count: int, batch_count: int) -> int:
        if not self.enabled:
            return stage_count * batch_count * SECONDS_PER_BATCH
        per_batch = THOROUGH_SECONDS_PER_BATCH.get(self.detail_level, THOROUGH_SECONDS_PER_BATCH["deep"])
        return stage_count * batch_count * per_batch * self.passes

    def is_within_budget(self, elapsed_seconds: float) -> bool:
        return elapsed_seconds < self.timeout_minutes * 60


PromptBuilder = Callable[[str, ProcessingContext, ThoroughPass], str]
"""(stage_id, context, pass) -> prompt text."""

ItemParser = Callable[[str, str, int], list[AnalysisItem]]
"""(response_text, stage_id, batch_index) -> items."""


def default_prompt_builder(stage_id: str, context: ProcessingContext, thorough_pass: ThoroughPass) -> str:
    """Serialize the analysis context for a stage as the prompt body."""
    payload = {
        "stage": stage_id,
        "batch": {
            "index": context.batch.index,
            "total": context.total_batches,
            "first_page": context.batch.start,
            "last_page": context.batch.end,
            "overlap_pages": context.batch.overlap_start,
        },
        "pass": {"number": thorough_pass.number, "focus": thorough_pass.focus},
        "known_entities": [
            {"id": state.entity_id, "state": state.state, "last_seen_batch": state.last_seen_batch}
            for state in context.continuity_hints.values()
        ],
        "previous_stages": sorted(context.previous_results),
        "response_format": 'JSON list of objects with "id" and "confidence" (0.0-1.0)',
    }
    if thorough_pass.instructions:
        payload["instructions"] = thorough_pass.instructions
    return json.dumps(payload, ensure_ascii=False)


def parse_items(text: str, stage_id: str, batch_index: int) -> list[AnalysisItem]:
    """Parse a model answer into analysis items.

    Accepts a JSON list of objects, or an object with an ``items`` list. Every
    object needs an ``id``; a missing ``confidence`` defaults to 0.5.

    Raises:
        ValueError: If the answer is not JSON of that shape
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"{stage_id}: response is not valid JSON ({e.msg} at position {e.pos})") from e

    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ValueError(f"{stage_id}: expected a JSON list of items")

    items: list[AnalysisItem] = []
    for entry in data:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValueError(f"{stage_id}: every item needs an 'id'")
        fields = {k: v for k, v in entry.items() if k not in ("id", "confidence")}
        items.append(
            AnalysisItem(
                id=str(entry["id"]),
                confidence=float(entry.get("confidence", DEFAULT_ITEM_CONFIDENCE)),
                data=fields,
                batch_index=batch_index,
                stage_id=stage_id,
            )
        )
    return items


def _page_images(items: Sequence[Any]) -> tuple[bytes, ...]:
    return tuple(item if isinstance(item, bytes) else item.image for item in items)


def make_analysis_stage(
    stage_id: str,
    gateway: ModelGateway,
    dependencies: Sequence[str] = (),
    thorough: ThoroughConfig | None = None,
    prompt_builder: PromptBuilder = default_prompt_builder,
    parser: ItemParser = parse_items,
    timeout_s: float = DEFAULT_STAGE_TIMEOUT_S,
    system_prompt: str | None = None,
) -> StageDefinition:
    """Build a stage that analyzes the batch pages through ``gateway``.

    The stage payload is the merged list of ``AnalysisItem``s of all passes.
    A provider failure or an unparsable answer is returned as a failed
    ``StageResult`` carrying the provider history. Provider attempts are also
    recorded in ``context.provider_history`` as they end, so the pipeline can
    report them when the stage times out.

    The stage timeout is raised to cover the gateway's worst-case retry and
    failover time for every pass.
    """
    thorough = thorough or ThoroughConfig()
    passes = thorough.pass_plan()
    budget_s = len(passes) * gateway.call_budget_s()
    if budget_s > timeout_s:
        logger.debug("%s: stage timeout raised from %.0fs to %.0fs to cover retries", stage_id, timeout_s, budget_s)
        timeout_s = budget_s

    async def process(context: ProcessingContext) -> StageResult:
        images = _page_images(context.items)
        history: list[ProviderAttempt] = []
        context.provider_history[stage_id] = history
        pass_items: list[list[AnalysisItem]] = []

        for thorough_pass in passes:
            request = ModelRequest(
                prompt=prompt_builder(stage_id, context, thorough_pass),
                images=images,
                system_prompt=system_prompt,
                metadata={"stage": stage_id, "batch": context.batch_index, "pass": thorough_pass.number},
            )
            outcome = await gateway.invoke(request, stage_id=stage_id, token=context.token, on_attempt=history.append)

            if not outcome.success:
                return StageResult.failed(
                    stage_id,
                    str(outcome.error),
                    error_kind=outcome.error_kind,
                    history=tuple(history),
                )

            try:
                pass_items.append(parser(outcome.value.text, stage_id, context.batch_index))
            except ValueError as e:
                return StageResult.failed(stage_id, str(e), history=tuple(history))
            logger.debug(
                "%s pass %d/%d for batch %d: %d items via %s",
                stage_id,
                thorough_pass.number,
                len(passes),
                context.batch_index,
                len(pass_items[-1]),
                outcome.provider_used,
            )

        return StageResult(stage_id=stage_id, success=True, payload=merge_results(pass_items), history=tuple(history))

    return StageDefinition(
        id=stage_id,
        process=process,
        dependencies=tuple(dependencies),
        timeout_s=timeout_s,
        description=f"{stage_id} analysis",
    )


def build_analysis_stages(
    gateway: ModelGateway,
    thorough: ThoroughConfig | None = None,
    prompt_builder: PromptBuilder = default_prompt_builder,
    parser: ItemParser = parse_items,
    timeout_s: float = DEFAULT_STAGE_TIMEOUT_S,
    stage_ids: Sequence[str] | None = None,
) -> list[StageDefinition]:
    """The default overview/characters/timeline/relationships/themes graph.

    Args:
        gateway: Gateway used by every stage
        thorough: Thorough-mode settings
        prompt_builder: Prompt hook
        parser: Response parser
        timeout_s: Per-stage timeout (before the pipeline multiplier)
        stage_ids: Subset of stages to build; dependencies must be included

    Returns:
        Stage definitions in declaration order
    """
    selected = list(stage_ids) if stage_ids is not None else list(ANALYSIS_STAGES)
    unknown = [s for s in selected if s not in STAGE_DEPENDENCIES]
    if unknown:
        raise InvalidConfigError(f"Unknown analysis stages: {', '.join(unknown)}")

    return [
        make_analysis_stage(
            stage_id,
            gateway,
            dependencies=STAGE_DEPENDENCIES[stage_id],
            thorough=thorough,
            prompt_builder=prompt_builder,
            parser=parser,
            timeout_s=timeout_s,
        )
        for stage_id in selected
    ]
