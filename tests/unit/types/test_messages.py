"""Tests for request/response values, error kinds and items."""

from __future__ import annotations

import pytest

from orchestrator.exceptions import (
    ProviderAuthenticationError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    StageError,
)
from orchestrator.types import ModelProvider
from orchestrator.types.errors import ErrorKind, ProviderFailure
from orchestrator.types.items import AnalysisItem, PageItem
from orchestrator.types.messages import ModelRequest, ModelResponse, ProviderResult, TokenUsage


class TestErrorKind:
    def test_retryable_kinds(self):
        retryable = {kind for kind in ErrorKind if kind.is_retryable}

        assert retryable == {
            ErrorKind.RATE_LIMIT,
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.TRANSIENT_API_ERROR,
        }

    def test_terminal_request_kinds(self):
        terminal = {kind for kind in ErrorKind if kind.is_terminal_request}

        assert terminal == {ErrorKind.INVALID_REQUEST, ErrorKind.CONTENT_FILTER, ErrorKind.CONTEXT_LENGTH_EXCEEDED}

    def test_authentication_neither_retryable_nor_request_level(self):
        assert not ErrorKind.AUTHENTICATION.is_retryable
        assert not ErrorKind.AUTHENTICATION.is_terminal_request
        assert not ErrorKind.UNKNOWN.is_retryable


class TestProviderResult:
    """Tests for the ProviderResult success/failure value."""

    def test_success(self):
        response = ModelResponse(text="[]", provider_id="gemini", model="gemini-2.5-flash")
        result = ProviderResult.success(response)

        assert result.ok
        assert result.failure is None

    def test_error(self):
        result = ProviderResult.error(ErrorKind.RATE_LIMIT, "429", provider_id="openai", status_code=429)

        assert not result.ok
        assert result.failure == ProviderFailure(ErrorKind.RATE_LIMIT, "429", "openai", 429)
        assert result.failure.to_dict()["kind"] == "rate_limit"

    def test_exactly_one_side_required(self):
        with pytest.raises(ValueError):
            ProviderResult()
        with pytest.raises(ValueError):
            ProviderResult(
                response=ModelResponse(text="", provider_id="x", model="m"),
                failure=ProviderFailure(ErrorKind.UNKNOWN, "x"),
            )


class TestProviderError:
    @pytest.mark.parametrize(
        ("kind", "error_class"),
        [
            (ErrorKind.RATE_LIMIT, ProviderRateLimitError),
            (ErrorKind.AUTHENTICATION, ProviderAuthenticationError),
            (ErrorKind.TIMEOUT, ProviderTimeoutError),
            (ErrorKind.CONTENT_FILTER, ProviderError),
        ],
    )
    def test_from_failure(self, kind, error_class):
        error = ProviderError.from_failure(ProviderFailure(kind, "message", "gemini"))

        assert type(error) is error_class
        assert error.kind is kind
        assert error.provider_id == "gemini"
        assert str(error) == "message"

    def test_default_kinds(self):
        assert ProviderRateLimitError("429").kind is ErrorKind.RATE_LIMIT
        assert ProviderError("?").kind is ErrorKind.UNKNOWN

    def test_stage_error_message(self):
        assert str(StageError("overview", "failed")) == "[overview] failed"


class TestValues:
    def test_token_usage_total(self):
        assert TokenUsage(prompt_tokens=10, completion_tokens=5).total_tokens == 15

    def test_request_defaults(self):
        request = ModelRequest(prompt="analyze")

        assert request.images == ()
        assert request.max_tokens == 8192
        assert request.temperature == 0.2
        assert request.metadata == {}

    def test_analysis_item_dict_round_trip(self):
        item = AnalysisItem(id="hero", confidence=0.8, data={"role": "lead"}, batch_index=3, stage_id="characters")

        assert AnalysisItem.from_dict(item.to_dict()) == item

    def test_page_item_size(self):
        page = PageItem.from_bytes("page-001.png", b"x" * 2048)

        assert page.size_kb == 2.0

    def test_fake_provider_satisfies_protocol(self, make_provider):
        assert isinstance(make_provider("gemini"), ModelProvider)
