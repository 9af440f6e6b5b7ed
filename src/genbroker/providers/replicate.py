"""
Replicate provider implementation.

SDXL on Replicate runs as a prediction: the create call returns at once
with an id and the result has to be polled. ``generate_image`` does the
polling itself, bounded by ``max_wait``; ``get_job_status`` lets the status
reader look at the remote prediction directly.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any

import aiohttp

from ..config import ReplicateConfig
from ..errors import (
    ContentPolicyError,
    ErrorContext,
    InvalidResponseError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    error_from_status,
)
from ..logging import StructuredLogger
from .base import BaseImageProvider, ExecutionMode, SubmittedCallback
from .prompts import (
    DEFAULT_GUIDANCE_SCALE,
    DEFAULT_STEPS,
    PREVIEW_RESOLUTION,
    build_enhanced_prompt,
    build_negative_prompt,
)
from .types import ImageRequest, ImageResult, RemoteJobStatus, RemoteState

PROVIDER_NAME = "replicate"

_PROGRESS_RE = re.compile(r"(\d+)%")

_STATE_MAP: dict[str, RemoteState] = {
    "starting": RemoteState.PENDING,
    "processing": RemoteState.PROCESSING,
    "succeeded": RemoteState.COMPLETED,
    "failed": RemoteState.FAILED,
    "canceled": RemoteState.FAILED,
}


def parse_progress(logs: str | None) -> int | None:
    """Last ``NN%`` marker in the prediction logs."""
    if not logs:
        return None
    matches = _PROGRESS_RE.findall(logs)
    if not matches:
        return None
    return min(100, int(matches[-1]))


class ReplicateImageProvider(BaseImageProvider):
    """
    SDXL provider with fire-and-poll execution.

    Example:
        ```python
        provider = ReplicateImageProvider(ReplicateConfig(api_key="r8_..."))
        result = await provider.generate_image(request, on_submitted=remember_remote_id)
        ```
    """

    mode = ExecutionMode.POLL

    def __init__(
        self,
        config: ReplicateConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        logger: StructuredLogger | None = None,
    ):
        super().__init__(config, logger=logger)
        self._config: ReplicateConfig = config
        self._session = session

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.timeout),
            )
        return self._session

    def _context(self, **extra: Any) -> ErrorContext:
        return ErrorContext(provider=self.name, extra=extra)

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        One authenticated API call.

        Raises:
            ProviderError: Non-2xx answer, network failure, or timeout
        """
        session = await self._get_session()
        headers = {"Authorization": f"Token {self._config.api_key}"}
        if payload is not None:
            headers["Content-Type"] = "application/json"
        url = f"{self._config.base_url.rstrip('/')}/{path.lstrip('/')}"

        try:
            async with session.request(method, url, json=payload, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {}
                if response.status >= 400:
                    detail = (data or {}).get("detail") or f"API error: {response.status}"
                    raise error_from_status(response.status, detail, provider=self.name, context=self._context())
                return data or {}
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                "Replicate request timed out",
                timeout=self._config.timeout,
                context=self._context(),
                cause=e,
            ) from e
        except aiohttp.ClientError as e:
            raise ProviderUnavailableError(f"Network error: {e}", context=self._context(), cause=e) from e

    async def create_prediction(self, request: ImageRequest) -> dict[str, Any]:
        body = {
            "version": self._config.model_version,
            "input": {
                "prompt": build_enhanced_prompt(request.prompt, request.style),
                "negative_prompt": build_negative_prompt(request.negative_prompt, request.style),
                "width": request.width or PREVIEW_RESOLUTION,
                "height": request.height or PREVIEW_RESOLUTION,
                "num_inference_steps": request.steps or DEFAULT_STEPS,
                "guidance_scale": request.guidance_scale or DEFAULT_GUIDANCE_SCALE,
                "seed": request.seed,
                "num_outputs": 1,
                "scheduler": "K_EULER",
                "refine": "expert_ensemble_refiner",
                "refine_steps": 10,
                "high_noise_frac": 0.8,
            },
        }
        prediction = await self._request("POST", "predictions", body)
        if not prediction.get("id"):
            raise InvalidResponseError("Failed to create prediction", context=self._context())
        return prediction

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        return await self._request("GET", f"predictions/{prediction_id}")

    async def generate_image(
        self,
        request: ImageRequest,
        *,
        on_submitted: SubmittedCallback | None = None,
    ) -> ImageResult:
        if not self.is_available():
            raise ProviderUnavailableError("Replicate API token not configured", context=self._context())

        prediction = await self.create_prediction(request)
        prediction_id = prediction["id"]
        self._logger.debug("Prediction created", provider=self.name, prediction_id=prediction_id)
        if on_submitted is not None:
            await on_submitted(prediction_id)

        return await self.wait_for_prediction(prediction_id, request)

    async def wait_for_prediction(self, prediction_id: str, request: ImageRequest) -> ImageResult:
        """
        Poll until the prediction is terminal.

        Raises:
            ProviderTimeoutError: Still running after ``max_wait`` seconds
        """
        started = time.monotonic()
        while time.monotonic() - started < self._config.max_wait:
            prediction = await self.get_prediction(prediction_id)
            status = prediction.get("status")

            if status == "succeeded":
                return self._result_from(prediction, request)
            if status == "failed":
                raise self._failure_from(prediction)
            if status == "canceled":
                raise ProviderError("Prediction was cancelled", context=self._context(prediction_id=prediction_id))

            await asyncio.sleep(self._config.poll_interval)

        raise ProviderTimeoutError(
            "Generation timeout - please try again",
            timeout=self._config.max_wait,
            context=self._context(prediction_id=prediction_id),
        )

    async def get_job_status(self, remote_id: str) -> RemoteJobStatus:
        prediction = await self.get_prediction(remote_id)
        state = _STATE_MAP.get(prediction.get("status", ""), RemoteState.PENDING)

        if state == RemoteState.PROCESSING:
            return RemoteJobStatus(state=state, progress=parse_progress(prediction.get("logs")))
        if state == RemoteState.COMPLETED:
            try:
                result = self._result_from(prediction, None)
            except InvalidResponseError as e:
                return RemoteJobStatus(state=RemoteState.FAILED, error=e.message)
            return RemoteJobStatus(state=state, progress=100, result=result)
        if state == RemoteState.FAILED:
            return RemoteJobStatus(state=state, error=prediction.get("error") or "Generation failed")
        return RemoteJobStatus(state=state)

    def _result_from(self, prediction: dict[str, Any], request: ImageRequest | None) -> ImageResult:
        output = prediction.get("output") or []
        if isinstance(output, str):
            output = [output]
        if not output:
            raise InvalidResponseError(
                "Prediction succeeded but no output found",
                context=self._context(prediction_id=prediction.get("id")),
            )

        remote_input = prediction.get("input") or {}
        width = remote_input.get("width") or (request.width if request else PREVIEW_RESOLUTION)
        height = remote_input.get("height") or (request.height if request else PREVIEW_RESOLUTION)
        return ImageResult(
            image_url=output[0],
            width=int(width),
            height=int(height),
            provider=self.name,
            provider_job_id=prediction.get("id"),
            metadata={"completedAt": prediction.get("completed_at")},
        )

    def _failure_from(self, prediction: dict[str, Any]) -> ProviderError:
        message = prediction.get("error") or "Prediction failed"
        context = self._context(prediction_id=prediction.get("id"))
        if "nsfw" in str(message).lower():
            return ContentPolicyError(str(message), context=context)
        return ProviderError(str(message), context=context)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


__all__ = ["ReplicateImageProvider", "parse_progress"]
