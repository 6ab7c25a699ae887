"""Stage definitions, the stage pipeline and the default analysis stages."""

from __future__ import annotations

from .analysis import (
    ANALYSIS_STAGES,
    CONTINUITY_STAGE,
    STAGE_DEPENDENCIES,
    ThoroughConfig,
    ThoroughPass,
    build_analysis_stages,
    default_prompt_builder,
    make_analysis_stage,
    parse_items,
)
from .base import ProcessingContext, StageDefinition, StageResult
from .pipeline import PipelineOptions, PipelineProgress, StagePipeline

__all__ = [
    # Base
    "ProcessingContext",
    "StageDefinition",
    "StageResult",
    # Pipeline
    "PipelineOptions",
    "PipelineProgress",
    "StagePipeline",
    # Analysis
    "ANALYSIS_STAGES",
    "CONTINUITY_STAGE",
    "STAGE_DEPENDENCIES",
    "ThoroughConfig",
    "ThoroughPass",
    "build_analysis_stages",
    "default_prompt_builder",
    "make_analysis_stage",
    "parse_items",
]
