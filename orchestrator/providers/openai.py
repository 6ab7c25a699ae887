"""OpenAI-compatible adapter (openai.AsyncOpenAI).

Also serves Claude and other models through OpenRouter: model names with a
vendor prefix ("anthropic/claude-sonnet-4") are routed to OpenRouter unless
an explicit base URL is configured.
"""

from __future__ import annotations

import base64
import logging
import os

import openai
from openai import AsyncOpenAI

from orchestrator.providers.base import BaseModelProvider, status_to_kind
from orchestrator.types.errors import ErrorKind
from orchestrator.types.messages import ModelRequest, ModelResponse, ProviderResult, TokenUsage

logger = logging.getLogger(__name__)

__all__ = ["OPENROUTER_BASE_URL", "OpenAIProvider"]

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenAIProvider(BaseModelProvider):
    """Chat-completions provider with image inputs.

    Example:
        >>> provider = OpenAIProvider(model="gpt-4o")
        >>> claude = OpenAIProvider(model="anthropic/claude-sonnet-4", provider_id="anthropic")
    """

    id = "openai"

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        base_url: str | None = None,
        provider_id: str | None = None,
        client: AsyncOpenAI | None = None,
    ):
        """Initialize the OpenAI-compatible provider.

        Args:
            model: Model name (OpenRouter format like 'anthropic/claude-sonnet-4' allowed)
            api_key: API key (defaults to OPENAI_API_KEY, then OPENROUTER_API_KEY for OpenRouter)
            base_url: API base URL (defaults to OPENAI_BASE_URL)
            provider_id: Override the provider id
            client: Preconfigured client (tests)
        """
        super().__init__(model, provider_id)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.base_url = base_url or os.environ.get("OPENAI_BASE_URL")

        if not self.base_url and "/" in self.model:
            self.base_url = OPENROUTER_BASE_URL
            if not api_key:
                self.api_key = os.environ.get("OPENROUTER_API_KEY") or self.api_key

        self.client = client if client is not None else self._setup_client()

    def _setup_client(self) -> AsyncOpenAI | None:
        if not self.api_key:
            logger.warning("API key not found (model=%s, base_url=%s)", self.model, self.base_url or "default")
            return None

        if self.base_url:
            client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        else:
            client = AsyncOpenAI(api_key=self.api_key)
        logger.debug("AsyncOpenAI client initialized (model=%s, base_url=%s)", self.model, self.base_url or "default")
        return client

    def is_usable(self) -> bool:
        return self.client is not None

    async def _invoke_impl(self, request: ModelRequest, images: list[bytes]) -> ProviderResult:
        content: list[dict[str, object]] = [{"type": "text", "text": request.prompt}]
        for image in images:
            encoded = base64.b64encode(image).decode("utf-8")
            content.append({"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}})

        messages: list[dict[str, object]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": content})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )

        if not response.choices:
            return ProviderResult.error(ErrorKind.UNKNOWN, "Response has no choices", provider_id=self.id)

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            return ProviderResult.error(
                ErrorKind.CONTENT_FILTER, "Response blocked by content filter", provider_id=self.id
            )

        text = (choice.message.content or "").strip()
        if not text:
            return ProviderResult.error(ErrorKind.UNKNOWN, "Empty response", provider_id=self.id)

        usage = TokenUsage(
            prompt_tokens=response.usage.prompt_tokens if response.usage else 0,
            completion_tokens=response.usage.completion_tokens if response.usage else 0,
        )
        return ProviderResult.success(
            ModelResponse(
                text=text,
                provider_id=self.id,
                model=response.model or self.model,
                usage=usage,
                finish_reason=choice.finish_reason,
            )
        )

    def _classify(self, error: Exception) -> tuple[ErrorKind, int | None]:
        # APITimeoutError subclasses APIConnectionError
        if isinstance(error, openai.APITimeoutError):
            return ErrorKind.TIMEOUT, None
        if isinstance(error, openai.APIConnectionError):
            return ErrorKind.NETWORK, None
        if isinstance(error, openai.RateLimitError):
            return ErrorKind.RATE_LIMIT, 429
        if isinstance(error, openai.AuthenticationError | openai.PermissionDeniedError):
            return ErrorKind.AUTHENTICATION, error.status_code
        if isinstance(error, openai.APIStatusError):
            return status_to_kind(error.status_code, error.message), error.status_code
        return ErrorKind.UNKNOWN, None
