"""Usage, cost and progress tracking."""

from __future__ import annotations

from .progress import JobProgress
from .usage import DEFAULT_RATES, PROVIDER_RATES, ProviderRates, ProviderUsage, UsageLedger, UsageRecord, cost_for

__all__ = [
    "DEFAULT_RATES",
    "JobProgress",
    "PROVIDER_RATES",
    "ProviderRates",
    "ProviderUsage",
    "UsageLedger",
    "UsageRecord",
    "cost_for",
]
