"""Base class for model provider adapters.

Adapters translate SDK exceptions into an ``ErrorKind`` exactly once, here at
the adapter boundary, and return ``ProviderResult`` values. Nothing downstream
inspects error message text.
"""

from __future__ import annotations

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from PIL import Image, UnidentifiedImageError

from orchestrator.constants import JPEG_QUALITY, MAX_IMAGE_DIMENSION
from orchestrator.types.errors import ErrorKind
from orchestrator.types.messages import ModelRequest, ProviderResult

logger = logging.getLogger(__name__)

__all__ = ["BaseModelProvider", "prepare_image", "status_to_kind"]


def prepare_image(
    image: bytes,
    max_dim: int = MAX_IMAGE_DIMENSION,
    quality: int = JPEG_QUALITY,
) -> bytes:
    """Downscale a page image and re-encode it as JPEG.

    Maintains aspect ratio while ensuring the largest dimension does not
    exceed ``max_dim``.

    Args:
        image: Encoded image bytes (any format Pillow reads)
        max_dim: Maximum width or height
        quality: JPEG quality (1-100)

    Returns:
        JPEG bytes

    Raises:
        ValueError: If the bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(image)) as pil_image:
            pil_image.load()
            converted = pil_image.convert("RGB")
    except UnidentifiedImageError as e:
        raise ValueError(f"Unreadable page image: {e}") from e

    width, height = converted.size
    if max(width, height) > max_dim:
        scale = max_dim / max(width, height)
        converted = converted.resize((int(width * scale), int(height * scale)), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    converted.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


def status_to_kind(status_code: int | None, message: str = "") -> ErrorKind:
    """Classify an HTTP status reported by a provider SDK.

    Args:
        status_code: HTTP status, if any
        message: Provider message, consulted only to tell context-length
            rejections apart from other 400s

    Returns:
        ErrorKind
    """
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status_code in (400, 413, 422):
        lowered = message.lower()
        if "context" in lowered or "too long" in lowered or ("token" in lowered and "exceed" in lowered):
            return ErrorKind.CONTEXT_LENGTH_EXCEEDED
        return ErrorKind.INVALID_REQUEST
    if status_code == 404:
        return ErrorKind.INVALID_REQUEST
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code is not None and status_code >= 500:
        return ErrorKind.TRANSIENT_API_ERROR
    return ErrorKind.UNKNOWN


def _prepare_all(images: Sequence[bytes]) -> list[bytes]:
    return [prepare_image(image) for image in images]


class BaseModelProvider(ABC):
    """Common behavior of provider adapters.

    Subclasses implement ``_invoke_impl`` and may raise SDK exceptions from
    it; ``_classify`` maps them to an ``ErrorKind``.

    Page images are re-encoded in a worker thread. The prepared images of the
    last request are kept, so retries and thorough passes over the same pages
    encode them only once.

    Attributes:
        id: Provider id used for ranking, breakers and pricing
        model: Model name sent to the API
    """

    id: str = "base"

    def __init__(self, model: str, provider_id: str | None = None, prepare_images: bool = True):
        self.model = model
        if provider_id:
            self.id = provider_id
        self.prepare_images = prepare_images
        self._prepared: tuple[tuple[bytes, ...], list[bytes]] | None = None

    @abstractmethod
    def is_usable(self) -> bool:
        """Return True if the client is configured."""

    @abstractmethod
    async def _invoke_impl(self, request: ModelRequest, images: list[bytes]) -> ProviderResult:
        """Send the request; may raise SDK exceptions."""

    @abstractmethod
    def _classify(self, error: Exception) -> tuple[ErrorKind, int | None]:
        """Map an SDK exception to (kind, status code)."""

    async def invoke(self, request: ModelRequest) -> ProviderResult:
        """Send ``request`` and return a classified result. Never raises for API failures."""
        if not self.is_usable():
            return ProviderResult.error(
                ErrorKind.AUTHENTICATION,
                f"{self.id} client is not configured (missing API key?)",
                provider_id=self.id,
            )

        try:
            images = await self._prepared_images(request)
        except ValueError as e:
            return ProviderResult.error(ErrorKind.INVALID_REQUEST, str(e), provider_id=self.id)

        logger.debug("Requesting %s (model=%s, images=%d)", self.id, self.model, len(images))
        try:
            return await self._invoke_impl(request, images)
        except Exception as e:
            kind, status_code = self._classify(e)
            logger.warning("%s request failed (%s): %s", self.id, kind.value, e)
            return ProviderResult.error(kind, str(e), provider_id=self.id, status_code=status_code)

    async def _prepared_images(self, request: ModelRequest) -> list[bytes]:
        if not self.prepare_images or not request.images:
            return list(request.images)
        cached = self._prepared
        if cached is not None and cached[0] is request.images:
            return cached[1]
        images = await asyncio.to_thread(_prepare_all, request.images)
        self._prepared = (request.images, images)
        return images

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r}, model={self.model!r})"
