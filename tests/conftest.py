"""Pytest configuration and shared fixtures for orchestrator tests.

This module provides:
- Scripted fake model providers (no network access)
- A recording sleep and a controllable clock for retry/breaker timing
- Sample page fixtures
- Test configuration and path setup
"""

from __future__ import annotations

import io
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Register anyio pytest plugin for async test support
# This enables @pytest.mark.anyio decorator and anyio_backends config option
pytest_plugins = ("anyio",)

# Ensure project root is importable when running tests via uv or python -m pytest
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from orchestrator.types.messages import ModelRequest, ModelResponse, ProviderResult, TokenUsage  # noqa: E402


class FakeProvider:
    """Model provider answering from a script.

    Each call consumes the next script entry; the last entry repeats once the
    script is exhausted. Entries may be:
    - str: successful response text
    - ProviderResult: returned as-is
    - Exception: raised from invoke (simulates a misbehaving adapter)
    - callable(request): computes a str or ProviderResult
    """

    def __init__(self, provider_id: str, script: list[Any] | None = None, usable: bool = True):
        self.id = provider_id
        self.script = list(script) if script is not None else ["[]"]
        self.usable = usable
        self.requests: list[ModelRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def is_usable(self) -> bool:
        return self.usable

    async def invoke(self, request: ModelRequest) -> ProviderResult:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.script) - 1)
        entry = self.script[index]

        if callable(entry):
            entry = entry(request)
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, ProviderResult):
            return entry
        return ProviderResult.success(
            ModelResponse(
                text=entry,
                provider_id=self.id,
                model=f"{self.id}-test",
                usage=TokenUsage(prompt_tokens=100, completion_tokens=50),
            )
        )


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


class FakeClock:
    """Monotonic clock under test control (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


# ==================== Provider Fixtures ====================


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    """Factory for scripted fake providers.

    Example:
        >>> provider = make_provider("gemini", [ProviderResult.error(ErrorKind.RATE_LIMIT, "429"), "[]"])
    """

    def factory(provider_id: str = "gemini", script: list[Any] | None = None, usable: bool = True):
        return FakeProvider(provider_id, script, usable)

    return factory


@pytest.fixture
def rate_limited() -> ProviderResult:
    from orchestrator.types.errors import ErrorKind

    return ProviderResult.error(ErrorKind.RATE_LIMIT, "429 Too Many Requests")


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ==================== Sample Data Fixtures ====================


@pytest.fixture
def sample_png_bytes() -> bytes:
    """A small white PNG page image."""
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (64, 96), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def sample_pages() -> list[Any]:
    """Twenty fake pages (opaque bytes, fixed size)."""
    from orchestrator.types.items import PageItem

    return [PageItem(id=f"page-{i:03d}.png", image=f"page-{i}".encode(), size_kb=150.0) for i in range(20)]


# ==================== Async Configuration ====================


@pytest.fixture
def anyio_backend() -> str:
    """Force anyio to use asyncio backend only (trio not installed)."""
    return "asyncio"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (fake providers, full job)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")
