"""Tests for status classification, image preparation and the adapter base class."""

from __future__ import annotations

import io
import threading
from unittest.mock import patch

import pytest
from PIL import Image

from orchestrator.providers.base import BaseModelProvider, prepare_image, status_to_kind
from orchestrator.types.errors import ErrorKind
from orchestrator.types.messages import ModelRequest, ModelResponse, ProviderResult


class EchoProvider(BaseModelProvider):
    """Minimal adapter used to exercise BaseModelProvider.invoke()."""

    id = "echo"

    def __init__(self, usable=True, error=None, prepare_images=True):
        super().__init__("echo-1", prepare_images=prepare_images)
        self.usable = usable
        self.error = error
        self.received_images = None

    def is_usable(self):
        return self.usable

    async def _invoke_impl(self, request, images):
        self.received_images = images
        if self.error is not None:
            raise self.error
        return ProviderResult.success(ModelResponse(text=request.prompt, provider_id=self.id, model=self.model))

    def _classify(self, error):
        if isinstance(error, TimeoutError):
            return ErrorKind.TIMEOUT, None
        return ErrorKind.UNKNOWN, None


class TestStatusToKind:
    """Tests for status_to_kind()."""

    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (429, ErrorKind.RATE_LIMIT),
            (401, ErrorKind.AUTHENTICATION),
            (403, ErrorKind.AUTHENTICATION),
            (400, ErrorKind.INVALID_REQUEST),
            (404, ErrorKind.INVALID_REQUEST),
            (408, ErrorKind.TIMEOUT),
            (504, ErrorKind.TIMEOUT),
            (500, ErrorKind.TRANSIENT_API_ERROR),
            (503, ErrorKind.TRANSIENT_API_ERROR),
            (None, ErrorKind.UNKNOWN),
            (302, ErrorKind.UNKNOWN),
        ],
    )
    def test_status_mapping(self, status, kind):
        assert status_to_kind(status) is kind

    @pytest.mark.parametrize(
        "message",
        [
            "This model's maximum context length is 128000 tokens",
            "Request payload too long",
            "Input token count exceeds the maximum",
        ],
    )
    def test_context_length_messages(self, message):
        assert status_to_kind(400, message) is ErrorKind.CONTEXT_LENGTH_EXCEEDED
        assert status_to_kind(413, message) is ErrorKind.CONTEXT_LENGTH_EXCEEDED


class TestPrepareImage:
    """Tests for prepare_image()."""

    def test_small_image_reencoded_as_jpeg(self, sample_png_bytes):
        output = prepare_image(sample_png_bytes)

        with Image.open(io.BytesIO(output)) as image:
            assert image.format == "JPEG"
            assert image.size == (64, 96)

    def test_large_image_downscaled_keeping_aspect(self):
        buffer = io.BytesIO()
        Image.new("RGB", (2048, 1024), color="gray").save(buffer, format="PNG")

        output = prepare_image(buffer.getvalue(), max_dim=1024)

        with Image.open(io.BytesIO(output)) as image:
            assert image.size == (1024, 512)

    def test_unreadable_bytes(self):
        with pytest.raises(ValueError, match="Unreadable"):
            prepare_image(b"definitely not an image")


class TestBaseModelProvider:
    """Tests for BaseModelProvider.invoke()."""

    @pytest.mark.anyio
    async def test_unusable_provider_returns_authentication_error(self):
        provider = EchoProvider(usable=False)

        result = await provider.invoke(ModelRequest(prompt="hi"))

        assert result.failure.kind is ErrorKind.AUTHENTICATION
        assert provider.received_images is None

    @pytest.mark.anyio
    async def test_images_prepared_before_sending(self, sample_png_bytes):
        provider = EchoProvider()

        result = await provider.invoke(ModelRequest(prompt="hi", images=(sample_png_bytes,)))

        assert result.ok
        assert provider.received_images[0][:2] == b"\xff\xd8"

    @pytest.mark.anyio
    async def test_images_passed_through_when_disabled(self):
        provider = EchoProvider(prepare_images=False)

        await provider.invoke(ModelRequest(prompt="hi", images=(b"raw",)))

        assert provider.received_images == [b"raw"]

    @pytest.mark.anyio
    async def test_unreadable_image_is_invalid_request(self):
        provider = EchoProvider()

        result = await provider.invoke(ModelRequest(prompt="hi", images=(b"garbage",)))

        assert result.failure.kind is ErrorKind.INVALID_REQUEST
        assert provider.received_images is None

    @pytest.mark.anyio
    async def test_sdk_exception_classified(self):
        provider = EchoProvider(error=TimeoutError("read timeout"))

        result = await provider.invoke(ModelRequest(prompt="hi"))

        assert result.failure.kind is ErrorKind.TIMEOUT
        assert result.failure.provider_id == "echo"

    @pytest.mark.anyio
    async def test_images_encoded_once_per_request_off_the_event_loop(self, sample_png_bytes):
        """Test retries of the same request reuse the prepared images, encoded in a worker thread."""
        provider = EchoProvider()
        request = ModelRequest(prompt="hi", images=(sample_png_bytes, sample_png_bytes))
        threads = []

        def recording_prepare(image):
            threads.append(threading.get_ident())
            return prepare_image(image)

        with patch("orchestrator.providers.base.prepare_image", side_effect=recording_prepare):
            await provider.invoke(request)
            first = provider.received_images
            await provider.invoke(request)

        assert len(threads) == 2
        assert threading.get_ident() not in threads
        assert provider.received_images == first

    @pytest.mark.anyio
    async def test_new_request_images_are_encoded_again(self, sample_png_bytes):
        provider = EchoProvider()

        with patch("orchestrator.providers.base.prepare_image", side_effect=prepare_image) as prepare:
            await provider.invoke(ModelRequest(prompt="a", images=(sample_png_bytes,)))
            await provider.invoke(ModelRequest(prompt="b", images=(sample_png_bytes,)))

        assert prepare.call_count == 2
