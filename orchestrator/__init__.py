"""VLM analysis orchestrator.

Runs multi-stage analysis of page images against vision-language model APIs:
batch planning with overlap, retries with backoff, circuit breaking, provider
failover, dependency-ordered stages and usage accounting.

Example:
    >>> from orchestrator import ComponentFactory, OrchestratorConfig
    >>>
    >>> config = OrchestratorConfig(providers=["gemini", "openai"], thorough_mode=True)
    >>> config.validate()
    >>>
    >>> factory = ComponentFactory(config)
    >>> gateway = factory.create_gateway()
    >>> job = factory.create_job(gateway, pages)
    >>> report = await job.run(pages)
    >>> report.stage_results["characters"]
"""

from __future__ import annotations

from .cancellation import CancellationToken
from .config import OrchestratorConfig, load_provider_settings
from .exceptions import (
    CircuitOpenError,
    ConfigurationError,
    OperationCancelledError,
    OrchestratorError,
    ProviderError,
    StageError,
)
from .factory import ComponentFactory
from .gateway import ModelGateway
from .job import AnalysisJob, BatchFailure, JobReport
from .types import AnalysisItem, ErrorKind, ModelProvider, ModelRequest, ModelResponse, PageItem, ProviderResult

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "OrchestratorConfig",
    "load_provider_settings",
    # Composition
    "ComponentFactory",
    "ModelGateway",
    "AnalysisJob",
    "BatchFailure",
    "JobReport",
    "CancellationToken",
    # Types
    "AnalysisItem",
    "ErrorKind",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "PageItem",
    "ProviderResult",
    # Exceptions
    "CircuitOpenError",
    "ConfigurationError",
    "OperationCancelledError",
    "OrchestratorError",
    "ProviderError",
    "StageError",
]
