"""
OpenAI provider implementation.

DALL-E image generation. The images endpoint answers within the call, so
this is the synchronous variant of the provider contract.
"""

from __future__ import annotations

import inspect
from typing import Any

import openai
from openai import AsyncOpenAI

from ..config import OpenAIConfig
from ..errors import (
    ErrorContext,
    InvalidResponseError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    error_from_status,
)
from ..logging import StructuredLogger
from .base import BaseImageProvider, ExecutionMode, SubmittedCallback
from .prompts import build_enhanced_prompt
from .types import ImageRequest, ImageResult

PROVIDER_NAME = "openai"


def dalle_size(width: int, height: int) -> str:
    """Closest DALL-E 3 size for the requested aspect ratio."""
    ratio = width / height
    if ratio > 1.5:
        return "1792x1024"
    if ratio < 0.67:
        return "1024x1792"
    return "1024x1024"


def build_client(config: OpenAIConfig) -> AsyncOpenAI:
    client_kwargs: dict[str, Any] = {"timeout": config.timeout, "max_retries": 0}
    if config.api_key:
        client_kwargs["api_key"] = config.api_key
    if config.base_url:
        client_kwargs["base_url"] = config.base_url
    return AsyncOpenAI(**client_kwargs)


def translate_openai_error(exc: openai.OpenAIError, *, provider: str = PROVIDER_NAME) -> ProviderError:
    """Map an OpenAI SDK exception onto the broker's provider errors."""
    context = ErrorContext(provider=provider)
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeoutError(str(exc), context=context, cause=exc)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderUnavailableError(f"Network error: {exc.__cause__ or exc}", context=context, cause=exc)
    if isinstance(exc, openai.RateLimitError):
        return ProviderRateLimitError(
            "Rate limit exceeded. Please try again in a few moments.",
            context=context,
            provider_status=429,
            cause=exc,
        )
    if isinstance(exc, openai.APIStatusError):
        code = getattr(exc, "code", None)
        error = error_from_status(exc.status_code, str(exc), error_code=code, provider=provider, context=context)
        error.cause = exc
        return error
    return InvalidResponseError(str(exc), context=context, cause=exc)


class OpenAIImageProvider(BaseImageProvider):
    """
    DALL-E 3 image provider.

    Example:
        ```python
        provider = OpenAIImageProvider(OpenAIConfig(api_key="sk-..."))
        result = await provider.generate_image(ImageRequest(prompt="a red fox"))
        ```
    """

    mode = ExecutionMode.SYNC

    def __init__(
        self,
        config: OpenAIConfig,
        *,
        client: AsyncOpenAI | None = None,
        logger: StructuredLogger | None = None,
    ):
        super().__init__(config, logger=logger)
        self._config: OpenAIConfig = config
        self._client = client

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = build_client(self._config)
        return self._client

    async def generate_image(
        self,
        request: ImageRequest,
        *,
        on_submitted: SubmittedCallback | None = None,
    ) -> ImageResult:
        if not self.is_available():
            raise ProviderUnavailableError(
                "OpenAI API key not configured",
                context=ErrorContext(provider=self.name),
            )

        prompt = build_enhanced_prompt(request.prompt, request.style)
        size = dalle_size(request.width, request.height)
        width, height = (int(part) for part in size.split("x"))

        try:
            response = await self.client.images.generate(
                model=self._config.image_model,
                prompt=prompt,
                n=1,
                size=size,
                quality=self._config.image_quality,
                response_format="url",
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e, provider=self.name) from e

        if not response.data or not response.data[0].url:
            raise InvalidResponseError("No image generated", context=ErrorContext(provider=self.name))

        image = response.data[0]
        return ImageResult(
            image_url=image.url,
            width=width,
            height=height,
            provider=self.name,
            metadata={
                "revisedPrompt": getattr(image, "revised_prompt", None),
                "model": self._config.image_model,
                "size": size,
            },
        )

    async def close(self) -> None:
        if self._client is None:
            return
        close_fn = getattr(self._client, "close", None)
        if close_fn:
            res = close_fn()
            if inspect.isawaitable(res):
                await res


__all__ = ["OpenAIImageProvider", "build_client", "dalle_size", "translate_openai_error"]
