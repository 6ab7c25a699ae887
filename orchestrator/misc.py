"""Miscellaneous helpers for the orchestrator."""

from __future__ import annotations

import time
from datetime import UTC, datetime


def tz_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(UTC)


def elapsed_ms(start: float) -> float:
    """Milliseconds elapsed since a ``time.perf_counter()`` reading."""
    return (time.perf_counter() - start) * 1000


def ms_to_seconds(value_ms: float) -> float:
    return max(0.0, value_ms) / 1000.0
