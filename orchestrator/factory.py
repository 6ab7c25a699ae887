"""Component factory for analysis jobs.

This module provides:
- ComponentFactory: builds providers, gateway, stages and jobs from one
  validated OrchestratorConfig
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from typing import TYPE_CHECKING

from orchestrator.batch.processor import BatchProcessor
from orchestrator.checkpoint import JobCheckpoint, job_fingerprint
from orchestrator.gateway import ModelGateway
from orchestrator.job import AnalysisJob
from orchestrator.resilience.circuit import CircuitBreakerRegistry
from orchestrator.resilience.priority import ProviderPriorityManager
from orchestrator.stages.analysis import build_analysis_stages
from orchestrator.tracking.usage import UsageLedger

if TYPE_CHECKING:
    from orchestrator.config import OrchestratorConfig, ProviderSettings
    from orchestrator.resilience.retry import SleepFunc
    from orchestrator.stages.base import StageDefinition
    from orchestrator.types.interfaces import ModelProvider
    from orchestrator.types.items import PageItem

logger = logging.getLogger(__name__)

__all__ = ["ComponentFactory"]


class ComponentFactory:
    """Builds the components of an analysis job.

    Circuit breakers and the priority manager are created once per factory and
    shared by every gateway it builds; ledgers are created per gateway.

    Example:
        >>> config = OrchestratorConfig(providers=["gemini", "openai"])
        >>> config.validate()
        >>>
        >>> factory = ComponentFactory(config)
        >>> gateway = factory.create_gateway()
        >>> job = factory.create_job(gateway, pages)
        >>> report = await job.run(pages)
    """

    def __init__(self, config: OrchestratorConfig, settings: ProviderSettings | None = None):
        """Initialize component factory.

        Args:
            config: Validated orchestrator configuration
            settings: Provider limits and rates (loaded from config if omitted)
        """
        self.config = config
        self._settings = settings
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=config.failure_threshold,
            reset_timeout_ms=config.reset_timeout_ms,
        )
        self.priorities = ProviderPriorityManager()

    @property
    def settings(self) -> ProviderSettings:
        if self._settings is None:
            self._settings = self.config.provider_settings()
        return self._settings

    def create_providers(self) -> list[ModelProvider]:
        """Instantiate the configured providers through the provider registry.

        Raises:
            DependencyError: If a provider SDK is missing
        """
        from orchestrator.providers.registry import provider_registry  # noqa: PLC0415

        providers = [provider_registry.create(name) for name in self.config.providers]
        for provider in providers:
            if not provider.is_usable():
                logger.warning("Provider %s is not usable and will be skipped", provider.id)
        return providers

    def create_gateway(
        self,
        providers: Sequence[ModelProvider] | None = None,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
    ) -> ModelGateway:
        providers = list(providers) if providers is not None else self.create_providers()
        for provider in providers:
            if self.priorities.get(provider.id) is None:
                self.priorities.register(provider, priority=self.config.provider_priorities.get(provider.id, 1.0))

        return ModelGateway(
            providers,
            priorities=self.priorities,
            breakers=self.breakers,
            ledger=UsageLedger(self.settings.rates),
            retry_config=self.config.retry_config(),
            fallback_config=self.config.fallback_config(),
            request_timeout_s=self.config.request_timeout_s,
            sleep=sleep,
            rng=rng,
        )

    def create_stages(self, gateway: ModelGateway) -> list[StageDefinition]:
        return build_analysis_stages(
            gateway,
            thorough=self.config.thorough_config(),
            timeout_s=self.config.stage_timeout_s,
            stage_ids=self.config.stages,
        )

    def create_checkpoint(self, pages: Sequence[PageItem]) -> JobCheckpoint | None:
        if self.config.checkpoint_dir is None:
            return None
        key = job_fingerprint((page.id for page in pages), self.config.stages, self.config.thorough_mode)
        return JobCheckpoint(self.config.checkpoint_dir, job_key=key)

    def create_job(
        self,
        gateway: ModelGateway,
        pages: Sequence[PageItem] = (),
        sleep: SleepFunc | None = None,
    ) -> AnalysisJob:
        """Build a job; ``pages`` are only used to key the checkpoint."""
        return AnalysisJob(
            gateway,
            self.create_stages(gateway),
            planner=self.config.planner(self.settings),
            processor=BatchProcessor(self.config.delay_between_batches_ms, sleep=sleep),
            pipeline_options=self.config.pipeline_options(),
            thorough=self.config.thorough_config(),
            checkpoint=self.create_checkpoint(pages),
            continuity_window=self.config.continuity_window,
        )
