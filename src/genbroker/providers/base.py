"""
Provider protocol and base classes.

Every image backend implements one capability contract, tagged with how it
executes:

- SYNC providers return the finished image from ``generate_image``.
- POLL providers submit a remote job and also expose ``get_job_status`` so
  the status reader can query the remote job directly. Their
  ``generate_image`` still waits for the result, bounded by a deadline.

Selection between primary and fallback is a pure function of configuration
and availability (see ``routing``), never of the class hierarchy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol, runtime_checkable

from ..config import ProviderConfig
from ..logging import StructuredLogger, get_logger
from .types import ImageRequest, ImageResult, RemoteJobStatus

# Called once a POLL provider knows the remote id of the submitted job.
SubmittedCallback = Callable[[str], Awaitable[None]]


class ExecutionMode(str, Enum):
    SYNC = "sync"
    POLL = "poll"


@runtime_checkable
class ImageProvider(Protocol):
    """Capability contract shared by all image providers."""

    @property
    def name(self) -> str:
        ...

    @property
    def mode(self) -> ExecutionMode:
        ...

    def is_available(self) -> bool:
        """True when credentials and configuration are present."""
        ...

    def estimated_duration_seconds(self) -> int:
        """Typical wall time of one generation, used for progress estimates."""
        ...

    async def generate_image(
        self,
        request: ImageRequest,
        *,
        on_submitted: SubmittedCallback | None = None,
    ) -> ImageResult:
        """
        Generate one image.

        Raises:
            ProviderError: Typed failure (content policy, timeout, ...)
        """
        ...


@runtime_checkable
class PollingImageProvider(ImageProvider, Protocol):
    """Fire-and-poll variant."""

    async def get_job_status(self, remote_id: str) -> RemoteJobStatus:
        ...


class BaseImageProvider(ABC):
    """Shared plumbing for concrete providers."""

    mode: ExecutionMode = ExecutionMode.SYNC

    def __init__(self, config: ProviderConfig, *, logger: StructuredLogger | None = None):
        self._config = config
        self._logger = logger or get_logger()

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def is_available(self) -> bool:
        return bool(self._config.api_key)

    def estimated_duration_seconds(self) -> int:
        return self._config.estimated_duration_seconds

    @abstractmethod
    async def generate_image(
        self,
        request: ImageRequest,
        *,
        on_submitted: SubmittedCallback | None = None,
    ) -> ImageResult:
        ...

    async def close(self) -> None:
        """Release network resources. Default is a no-op."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(mode={self.mode.value!r}, available={self.is_available()})"


def is_polling(provider: ImageProvider) -> bool:
    return provider.mode == ExecutionMode.POLL and isinstance(provider, PollingImageProvider)


__all__ = [
    "ExecutionMode",
    "ImageProvider",
    "PollingImageProvider",
    "BaseImageProvider",
    "SubmittedCallback",
    "is_polling",
]
