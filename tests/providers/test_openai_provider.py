"""
Tests for the OpenAI (DALL-E) image provider.

The SDK client is replaced with mocks; no network calls are made.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from genbroker.config import OpenAIConfig
from genbroker.errors import (
    ContentPolicyError,
    InvalidResponseError,
    ProviderAuthenticationError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from genbroker.providers import (
    ExecutionMode,
    ImageProvider,
    ImageRequest,
    OpenAIImageProvider,
    dalle_size,
    is_polling,
    translate_openai_error,
)

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/images/generations")


def _status_error(cls, status: int, body=None):
    return cls("upstream error", response=httpx.Response(status, request=_REQUEST), body=body)


def _images_response(url="https://oaidalle.example.com/img.png", revised="a revised prompt"):
    return SimpleNamespace(data=[SimpleNamespace(url=url, revised_prompt=revised)])


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.images.generate = AsyncMock(return_value=_images_response())
    return client


@pytest.fixture
def provider(mock_client):
    return OpenAIImageProvider(OpenAIConfig(api_key="sk-test"), client=mock_client)


class TestDalleSize:
    @pytest.mark.parametrize(
        "width, height, size",
        [
            (1024, 1024, "1024x1024"),
            (1024, 768, "1024x1024"),
            (2048, 1024, "1792x1024"),
            (512, 1024, "1024x1792"),
        ],
    )
    def test_sizes(self, width, height, size):
        assert dalle_size(width, height) == size


class TestOpenAIImageProvider:
    def test_is_sync_provider(self, provider):
        assert isinstance(provider, ImageProvider)
        assert provider.mode == ExecutionMode.SYNC
        assert is_polling(provider) is False
        assert provider.estimated_duration_seconds() == 20

    def test_availability_follows_key(self):
        assert OpenAIImageProvider(OpenAIConfig()).is_available() is False

    async def test_generate_image(self, provider, mock_client):
        result = await provider.generate_image(ImageRequest(prompt="a red fox", style="cartoon", width=1024, height=768))

        assert result.image_url == "https://oaidalle.example.com/img.png"
        assert result.provider == "openai"
        assert (result.width, result.height) == (1024, 1024)
        assert result.metadata["revisedPrompt"] == "a revised prompt"

        kwargs = mock_client.images.generate.call_args.kwargs
        assert kwargs["model"] == "dall-e-3"
        assert kwargs["quality"] == "hd"
        assert kwargs["size"] == "1024x1024"
        assert kwargs["prompt"].startswith("Cartoon style illustration of a red fox")

    async def test_wide_request_uses_wide_size(self, provider):
        result = await provider.generate_image(ImageRequest(prompt="a skyline", width=2048, height=1024))

        assert (result.width, result.height) == (1792, 1024)

    async def test_missing_key_raises_unavailable(self, mock_client):
        provider = OpenAIImageProvider(OpenAIConfig(), client=mock_client)

        with pytest.raises(ProviderUnavailableError):
            await provider.generate_image(ImageRequest(prompt="a red fox"))
        mock_client.images.generate.assert_not_called()

    async def test_empty_response(self, provider, mock_client):
        mock_client.images.generate.return_value = SimpleNamespace(data=[])

        with pytest.raises(InvalidResponseError, match="No image generated"):
            await provider.generate_image(ImageRequest(prompt="a red fox"))

    async def test_content_policy_rejection(self, provider, mock_client):
        mock_client.images.generate.side_effect = _status_error(
            openai.BadRequestError,
            400,
            body={"code": "content_policy_violation", "message": "rejected"},
        )

        with pytest.raises(ContentPolicyError) as exc_info:
            await provider.generate_image(ImageRequest(prompt="something"))
        assert exc_info.value.context.provider == "openai"

    async def test_close_without_client_is_noop(self):
        await OpenAIImageProvider(OpenAIConfig(api_key="sk-test")).close()


class TestTranslateOpenAIError:
    def test_timeout(self):
        assert isinstance(translate_openai_error(openai.APITimeoutError(request=_REQUEST)), ProviderTimeoutError)

    def test_connection(self):
        error = translate_openai_error(openai.APIConnectionError(request=_REQUEST))
        assert isinstance(error, ProviderUnavailableError)

    def test_rate_limit(self):
        error = translate_openai_error(_status_error(openai.RateLimitError, 429))
        assert isinstance(error, ProviderRateLimitError)
        assert error.provider_status == 429

    def test_auth(self):
        error = translate_openai_error(_status_error(openai.AuthenticationError, 401))
        assert isinstance(error, ProviderAuthenticationError)

    def test_server_error(self):
        error = translate_openai_error(_status_error(openai.InternalServerError, 500))
        assert isinstance(error, InvalidResponseError)
        assert error.cause is not None
