"""Google Gemini adapter (google-genai async client)."""

from __future__ import annotations

import logging
import os

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from orchestrator.providers.base import BaseModelProvider, status_to_kind
from orchestrator.types.errors import ErrorKind
from orchestrator.types.messages import ModelRequest, ModelResponse, ProviderResult, TokenUsage

logger = logging.getLogger(__name__)

__all__ = ["GeminiProvider"]

_BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


class GeminiProvider(BaseModelProvider):
    """Gemini multimodal provider.

    Example:
        >>> provider = GeminiProvider(model="gemini-2.5-flash")
        >>> result = await provider.invoke(ModelRequest(prompt="...", images=(page,)))
    """

    id = "gemini"

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        api_key: str | None = None,
        provider_id: str | None = None,
        json_output: bool = True,
        client: genai.Client | None = None,
    ):
        """Initialize the Gemini provider.

        Args:
            model: Gemini model name
            api_key: API key (defaults to GEMINI_API_KEY)
            provider_id: Override the provider id
            json_output: Ask the model for an application/json response
            client: Preconfigured client (tests)
        """
        super().__init__(model, provider_id)
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.json_output = json_output
        self.client = client if client is not None else self._setup_client()

    def _setup_client(self) -> genai.Client | None:
        if not self.api_key:
            logger.warning("GEMINI_API_KEY environment variable not set")
            return None
        try:
            client = genai.Client(api_key=self.api_key)
        except (TypeError, ValueError) as e:
            logger.error("Failed to initialize Gemini client with invalid configuration: %s", e)
            return None
        logger.info("Gemini client initialized (model=%s)", self.model)
        return client

    def is_usable(self) -> bool:
        return self.client is not None

    async def _invoke_impl(self, request: ModelRequest, images: list[bytes]) -> ProviderResult:
        parts = [types.Part.from_text(text=request.prompt)]
        parts.extend(types.Part.from_bytes(data=image, mime_type="image/jpeg") for image in images)

        config = types.GenerateContentConfig(
            system_instruction=request.system_prompt,
            max_output_tokens=request.max_tokens,
            temperature=request.temperature,
            response_mime_type="application/json" if self.json_output else None,
        )

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and feedback.block_reason:
            return ProviderResult.error(
                ErrorKind.CONTENT_FILTER,
                f"Prompt blocked: {feedback.block_reason}",
                provider_id=self.id,
            )

        finish_reason = self._finish_reason(response)
        if finish_reason in _BLOCKED_FINISH_REASONS:
            return ProviderResult.error(
                ErrorKind.CONTENT_FILTER,
                f"Response blocked (finish reason {finish_reason})",
                provider_id=self.id,
            )

        text = (response.text or "").strip()
        if not text:
            return ProviderResult.error(ErrorKind.UNKNOWN, "Empty response", provider_id=self.id)

        usage_metadata = response.usage_metadata
        usage = TokenUsage(
            prompt_tokens=(usage_metadata.prompt_token_count or 0) if usage_metadata else 0,
            completion_tokens=(usage_metadata.candidates_token_count or 0) if usage_metadata else 0,
        )
        return ProviderResult.success(
            ModelResponse(text=text, provider_id=self.id, model=self.model, usage=usage, finish_reason=finish_reason)
        )

    @staticmethod
    def _finish_reason(response: types.GenerateContentResponse) -> str | None:
        if not response.candidates:
            return None
        reason = response.candidates[0].finish_reason
        if reason is None:
            return None
        return getattr(reason, "value", None) or str(reason)

    def _classify(self, error: Exception) -> tuple[ErrorKind, int | None]:
        if isinstance(error, genai_errors.APIError):
            return status_to_kind(error.code, error.message or str(error)), error.code
        if isinstance(error, httpx.TimeoutException | TimeoutError):
            return ErrorKind.TIMEOUT, None
        if isinstance(error, httpx.TransportError | ConnectionError):
            return ErrorKind.NETWORK, None
        return ErrorKind.UNKNOWN, None
