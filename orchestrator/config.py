"""Orchestrator configuration module.

This module provides:
- OrchestratorConfig: Dataclass for all orchestrator options
- YAML loading for settings/orchestrator.yaml and settings/providers.yaml
- Derivation of the per-component configs (retry, fallback, pipeline, ...)
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from orchestrator.batch.planner import PROVIDER_LIMITS, BatchPlanner
from orchestrator.batch.types import ProviderLimits
from orchestrator.constants import (
    CONTINUITY_WINDOW,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_DELAY_BETWEEN_BATCHES_MS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_INITIAL_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_S,
    DEFAULT_RESET_TIMEOUT_MS,
    DEFAULT_STAGE_TIMEOUT_S,
)
from orchestrator.exceptions import InvalidConfigError, MissingConfigError
from orchestrator.resilience.fallback import FallbackConfig
from orchestrator.resilience.retry import RetryConfig
from orchestrator.stages.analysis import ANALYSIS_STAGES, DETAIL_LEVELS, STAGE_DEPENDENCIES, ThoroughConfig
from orchestrator.stages.pipeline import PipelineOptions
from orchestrator.tracking.usage import PROVIDER_RATES, ProviderRates

logger = logging.getLogger(__name__)

__all__ = ["OrchestratorConfig", "ProviderSettings", "load_provider_settings"]

DEFAULT_SETTINGS_DIR = Path("settings")
DEFAULT_PROVIDER_SETTINGS = DEFAULT_SETTINGS_DIR / "providers.yaml"


# Accepted YAML keys: snake_case field names plus the camelCase option names
_YAML_FIELDS: dict[str, str] = {
    "providers": "providers",
    "provider_priorities": "provider_priorities",
    "max_batch_size": "max_batch_size",
    "maxBatchSize": "max_batch_size",
    "overlap_size": "overlap_size",
    "overlapSize": "overlap_size",
    "delay_between_batches_ms": "delay_between_batches_ms",
    "delayBetweenBatches": "delay_between_batches_ms",
    "continuity_window": "continuity_window",
    "max_retries": "max_retries",
    "maxRetries": "max_retries",
    "initial_delay_ms": "initial_delay_ms",
    "initialDelayMs": "initial_delay_ms",
    "max_delay_ms": "max_delay_ms",
    "maxDelayMs": "max_delay_ms",
    "backoff_multiplier": "backoff_multiplier",
    "backoffMultiplier": "backoff_multiplier",
    "failure_threshold": "failure_threshold",
    "failureThreshold": "failure_threshold",
    "reset_timeout_ms": "reset_timeout_ms",
    "resetTimeoutMs": "reset_timeout_ms",
    "max_switches": "max_switches",
    "maxSwitches": "max_switches",
    "switch_on_error": "switch_on_error",
    "switchOnError": "switch_on_error",
    "switch_on_rate_limit": "switch_on_rate_limit",
    "switchOnRateLimit": "switch_on_rate_limit",
    "stages": "stages",
    "continue_on_error": "continue_on_error",
    "continueOnError": "continue_on_error",
    "skip_completed": "skip_completed",
    "skipCompleted": "skip_completed",
    "timeout_multiplier": "timeout_multiplier",
    "timeoutMultiplier": "timeout_multiplier",
    "stage_timeout_s": "stage_timeout_s",
    "request_timeout_s": "request_timeout_s",
    "thorough_mode": "thorough_mode",
    "detail_level": "detail_level",
    "provider_settings_path": "provider_settings_path",
    "checkpoint_dir": "checkpoint_dir",
}


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file with error handling.

    Args:
        config_path: Path to YAML config file

    Returns:
        Configuration dict, or empty dict if file not found or invalid
    """
    try:
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                logger.warning("Config file %s does not contain a mapping, ignoring it", config_path)
                return {}
            return data
        logger.debug("Config file not found: %s", config_path)
        return {}
    except yaml.YAMLError as e:
        logger.warning("Failed to parse config file %s: %s", config_path, e)
        return {}
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read config file %s: %s", config_path, e)
        return {}


@dataclass(frozen=True)
class ProviderSettings:
    """Per-provider batch limits and token rates."""

    limits: dict[str, ProviderLimits]
    rates: dict[str, ProviderRates]


def load_provider_settings(config_path: Path = DEFAULT_PROVIDER_SETTINGS) -> ProviderSettings:
    """Load provider limits and rates, falling back to the built-in tables.

    Entries in the file override the built-in entry of the same provider;
    malformed entries are skipped with a warning.

    Example YAML:
        providers:
          gemini:
            limits: {max_items_per_call: 16, max_payload_kb: 2048,
                     max_tokens_per_request: 1048576, recommended_batch_size: 12}
            rates: {input: 0.075, output: 0.3}
    """
    limits = dict(PROVIDER_LIMITS)
    rates = dict(PROVIDER_RATES)

    providers = _load_yaml_config(config_path).get("providers") or {}
    for provider_id, entry in providers.items():
        if not isinstance(entry, dict):
            logger.warning("Ignoring malformed provider settings for %s", provider_id)
            continue
        try:
            if "limits" in entry:
                limits[provider_id] = ProviderLimits(**entry["limits"])
            if "rates" in entry:
                rates[provider_id] = ProviderRates(**entry["rates"])
        except TypeError as e:
            logger.warning("Ignoring invalid provider settings for %s: %s", provider_id, e)

    return ProviderSettings(limits=limits, rates=rates)


@dataclass
class OrchestratorConfig:
    """Orchestrator configuration with validation.

    Configuration Sources (in order of precedence):
    1. Constructor arguments (highest priority)
    2. CLI arguments via from_cli()
    3. YAML configuration files via from_yaml()
    4. Default values (lowest priority)

    Example:
        >>> config = OrchestratorConfig(providers=["gemini", "openai"], max_retries=2)
        >>> config.validate()

        >>> config = OrchestratorConfig.from_yaml(Path("settings/orchestrator.yaml"), thorough_mode=True)
        >>> retry = config.retry_config()
    """

    # ==================== Providers ====================
    providers: list[str] = field(default_factory=lambda: ["gemini", "openai"])
    provider_priorities: dict[str, float] = field(default_factory=dict)

    # ==================== Batching ====================
    max_batch_size: int | None = None
    overlap_size: int | None = None
    delay_between_batches_ms: float = DEFAULT_DELAY_BETWEEN_BATCHES_MS
    continuity_window: int = CONTINUITY_WINDOW

    # ==================== Retry ====================
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    # ==================== Circuit Breaker ====================
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    reset_timeout_ms: float = DEFAULT_RESET_TIMEOUT_MS

    # ==================== Fallback ====================
    max_switches: int = 2
    switch_on_error: bool = False
    switch_on_rate_limit: bool = True

    # ==================== Stage Pipeline ====================
    stages: list[str] = field(default_factory=lambda: list(ANALYSIS_STAGES))
    continue_on_error: bool = False
    skip_completed: bool = True
    timeout_multiplier: float | None = None  # None = derive from thorough passes
    stage_timeout_s: float = DEFAULT_STAGE_TIMEOUT_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S

    # ==================== Thorough Mode ====================
    thorough_mode: bool = False
    detail_level: str = "deep"

    # ==================== Paths ====================
    provider_settings_path: Path = field(default_factory=lambda: DEFAULT_PROVIDER_SETTINGS)
    checkpoint_dir: Path | None = None

    def __post_init__(self) -> None:
        """Convert path strings and comma-separated lists."""
        if isinstance(self.provider_settings_path, str):
            self.provider_settings_path = Path(self.provider_settings_path)
        if isinstance(self.checkpoint_dir, str):
            self.checkpoint_dir = Path(self.checkpoint_dir)
        if isinstance(self.providers, str):
            self.providers = [name.strip() for name in self.providers.split(",") if name.strip()]
        if isinstance(self.stages, str):
            self.stages = [name.strip() for name in self.stages.split(",") if name.strip()]

    @classmethod
    def from_yaml(cls, config_path: Path, **overrides: Any) -> OrchestratorConfig:
        """Load configuration from a YAML file.

        Args:
            config_path: Path to YAML configuration file
            **overrides: Values to override from file

        Returns:
            OrchestratorConfig instance
        """
        yaml_config = _load_yaml_config(config_path)

        kwargs: dict[str, Any] = {}
        for yaml_key, field_name in _YAML_FIELDS.items():
            if yaml_key in yaml_config:
                kwargs[field_name] = yaml_config[yaml_key]

        unknown = set(yaml_config) - set(_YAML_FIELDS)
        if unknown:
            logger.warning("Ignoring unknown options in %s: %s", config_path, ", ".join(sorted(unknown)))

        kwargs.update(overrides)
        return cls(**kwargs)

    @classmethod
    def _extract_cli_kwargs(cls, args: argparse.Namespace) -> dict[str, Any]:
        """Extract configuration kwargs from CLI arguments.

        Args:
            args: Parsed CLI arguments

        Returns:
            Dictionary of config kwargs
        """
        # Format: (cli_name, config_name, transform_func)
        mappings: list[tuple[str, str, Any]] = [
            ("providers", "providers", None),
            ("stages", "stages", None),
            ("max_batch_size", "max_batch_size", None),
            ("overlap_size", "overlap_size", None),
            ("max_retries", "max_retries", None),
            ("max_switches", "max_switches", None),
            ("detail_level", "detail_level", None),
            ("resume", "checkpoint_dir", Path),
        ]

        kwargs: dict[str, Any] = {}
        for cli_name, config_name, transform in mappings:
            value = getattr(args, cli_name, None)
            if value is not None:
                kwargs[config_name] = transform(value) if transform else value

        if getattr(args, "thorough", False):
            kwargs["thorough_mode"] = True
        if getattr(args, "continue_on_error", False):
            kwargs["continue_on_error"] = True

        return kwargs

    @classmethod
    def from_cli(cls, args: argparse.Namespace) -> OrchestratorConfig:
        """Create configuration from CLI arguments.

        When ``args.config`` names a YAML file, it is loaded first and the CLI
        values override it.
        """
        kwargs = cls._extract_cli_kwargs(args)
        config_path = getattr(args, "config", None)
        if config_path:
            return cls.from_yaml(Path(config_path), **kwargs)
        return cls(**kwargs)

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            MissingConfigError: If no provider is configured
            InvalidConfigError: If any value is out of range
        """
        from orchestrator.providers.registry import provider_registry  # noqa: PLC0415

        if not self.providers:
            raise MissingConfigError("At least one provider must be configured")
        unknown = [name for name in self.providers if name not in provider_registry]
        if unknown:
            raise InvalidConfigError(
                f"Unknown providers: {', '.join(unknown)} (available: {', '.join(provider_registry.list_available())})"
            )

        if self.max_batch_size is not None and self.max_batch_size < 2:  # noqa: PLR2004
            raise InvalidConfigError(f"max_batch_size must be >= 2, got {self.max_batch_size}")
        if self.overlap_size is not None:
            if self.overlap_size < 1:
                raise InvalidConfigError(f"overlap_size must be >= 1, got {self.overlap_size}")
            if self.max_batch_size is not None and self.overlap_size >= self.max_batch_size:
                raise InvalidConfigError(
                    f"overlap_size ({self.overlap_size}) must be smaller than max_batch_size ({self.max_batch_size})"
                )
        if self.delay_between_batches_ms < 0:
            raise InvalidConfigError("delay_between_batches_ms must be >= 0")
        if self.continuity_window < 0:
            raise InvalidConfigError("continuity_window must be >= 0")
        if self.failure_threshold < 1:
            raise InvalidConfigError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.reset_timeout_ms <= 0:
            raise InvalidConfigError(f"reset_timeout_ms must be positive, got {self.reset_timeout_ms}")
        if self.stage_timeout_s <= 0 or self.request_timeout_s <= 0:
            raise InvalidConfigError("Timeouts must be positive")
        if self.detail_level not in DETAIL_LEVELS:
            raise InvalidConfigError(f"Unknown detail level: {self.detail_level} (expected one of {DETAIL_LEVELS})")

        unknown_stages = [stage for stage in self.stages if stage not in ANALYSIS_STAGES]
        if unknown_stages:
            raise InvalidConfigError(f"Unknown analysis stages: {', '.join(unknown_stages)}")
        for stage in self.stages:
            missing = [dependency for dependency in STAGE_DEPENDENCIES[stage] if dependency not in self.stages]
            if missing:
                raise InvalidConfigError(f"Stage {stage} depends on {', '.join(missing)}, which is not selected")

        self.retry_config().validate()
        self.fallback_config().validate()
        self.pipeline_options().validate()

        logger.info(
            "Configuration validated: providers=%s, stages=%d, thorough=%s (%s), retries=%d, switches=%d",
            ",".join(self.providers),
            len(self.stages),
            self.thorough_mode,
            self.detail_level,
            self.max_retries,
            self.max_switches,
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
        )

    def fallback_config(self) -> FallbackConfig:
        return FallbackConfig(
            max_switches=self.max_switches,
            switch_on_error=self.switch_on_error,
            switch_on_rate_limit=self.switch_on_rate_limit,
        )

    def thorough_config(self) -> ThoroughConfig:
        return ThoroughConfig.for_detail_level(self.thorough_mode, self.detail_level)

    def pipeline_options(self) -> PipelineOptions:
        """Stage pipeline tuning; thorough stages get one timeout per pass."""
        multiplier = self.timeout_multiplier
        if multiplier is None:
            multiplier = float(self.thorough_config().progress_weight)
        return PipelineOptions(
            continue_on_error=self.continue_on_error,
            skip_completed=self.skip_completed,
            timeout_multiplier=multiplier,
        )

    def provider_settings(self) -> ProviderSettings:
        return load_provider_settings(self.provider_settings_path)

    def planner(self, settings: ProviderSettings | None = None) -> BatchPlanner:
        settings = settings or self.provider_settings()
        return BatchPlanner(settings.limits, max_batch_size=self.max_batch_size, overlap_size=self.overlap_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "providers": list(self.providers),
            "provider_priorities": dict(self.provider_priorities),
            "max_batch_size": self.max_batch_size,
            "overlap_size": self.overlap_size,
            "delay_between_batches_ms": self.delay_between_batches_ms,
            "continuity_window": self.continuity_window,
            "max_retries": self.max_retries,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
            "max_switches": self.max_switches,
            "switch_on_error": self.switch_on_error,
            "switch_on_rate_limit": self.switch_on_rate_limit,
            "stages": list(self.stages),
            "continue_on_error": self.continue_on_error,
            "skip_completed": self.skip_completed,
            "timeout_multiplier": self.timeout_multiplier,
            "stage_timeout_s": self.stage_timeout_s,
            "request_timeout_s": self.request_timeout_s,
            "thorough_mode": self.thorough_mode,
            "detail_level": self.detail_level,
        }
