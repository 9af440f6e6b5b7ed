"""
Job status reader.

Read-only projection of GenerationJob rows for polling clients. Never
writes; the orchestrator owns every state change.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from .errors import ErrorContext, NotFoundError, UnauthorisedError
from .jobs import GenerationJob, JobKind, JobStatus, JobStore
from .ledger import Owner
from .logging import StructuredLogger, get_logger
from .providers import ImageProvider, RemoteState, StoryGenerator, is_polling

# Used when the job's provider is not registered with the reader.
DEFAULT_ESTIMATED_SECONDS = 45

# Completion is signalled only by the terminal transition.
MAX_PROGRESS = 95


@dataclass(frozen=True)
class JobStatusView:
    job_id: str
    kind: JobKind
    status: str
    provider: str | None = None
    progress: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: float | None = None
    completed_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "kind": self.kind.value,
            "status": self.status,
            "provider": self.provider,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }
        if self.progress is not None:
            data["progress"] = self.progress
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


def estimate_progress(elapsed_seconds: float, estimated_seconds: float) -> int:
    """min(95, elapsed / estimate * 100), rounded."""
    if estimated_seconds <= 0:
        return MAX_PROGRESS
    return max(0, min(MAX_PROGRESS, round(elapsed_seconds / estimated_seconds * 100)))


class JobStatusReader:
    """
    Polling view over jobs.

    Example:
        ```python
        reader = JobStatusReader(job_store, image_providers=providers)
        view = await reader.get_status(job_id, owner)
        ```
    """

    def __init__(
        self,
        jobs: JobStore,
        *,
        image_providers: Mapping[str, ImageProvider] | None = None,
        story_generator: StoryGenerator | None = None,
        clock: Callable[[], float] = time.time,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._jobs = jobs
        self._providers = dict(image_providers or {})
        self._story_generator = story_generator
        self._clock = clock
        self._logger = logger or get_logger()

    async def get_status(self, job_id: str, owner: Owner) -> JobStatusView:
        """
        Status of one job.

        Raises:
            NotFoundError: No such job
            UnauthorisedError: The job belongs to another owner
        """
        job = await self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(context=ErrorContext(job_id=job_id, owner_key=owner.key, operation="get_status"))
        if job.owner_key != owner.key:
            raise UnauthorisedError(context=ErrorContext(job_id=job_id, owner_key=owner.key, operation="get_status"))

        view = JobStatusView(
            job_id=job.job_id,
            kind=job.kind,
            status=job.status.external,
            provider=job.provider,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

        if job.status == JobStatus.COMPLETED:
            return replace(view, result=dict(job.output or {}))
        if job.status == JobStatus.FAILED:
            return replace(view, error=job.error_message or "Generation failed")
        if job.status == JobStatus.PROCESSING and job.started_at is not None:
            return replace(view, progress=await self._progress(job))
        return view

    def estimated_duration(self, job: GenerationJob) -> int:
        if job.kind == JobKind.STORY and self._story_generator is not None:
            return self._story_generator.estimated_duration_seconds()
        provider = self._providers.get(job.provider or "")
        if provider is None:
            return DEFAULT_ESTIMATED_SECONDS
        return provider.estimated_duration_seconds()

    async def _progress(self, job: GenerationJob) -> int:
        elapsed = self._clock() - (job.started_at or self._clock())
        progress = estimate_progress(elapsed, self.estimated_duration(job))

        provider = self._providers.get(job.provider or "")
        if provider is None or job.provider_job_id is None or not is_polling(provider):
            return progress

        try:
            remote = await provider.get_job_status(job.provider_job_id)
        except Exception as e:
            # The local estimate stands in when the provider cannot be reached.
            self._logger.debug("Remote status unavailable", job_id=job.job_id, error=str(e))
            return progress

        if remote.state == RemoteState.PROCESSING and remote.progress is not None:
            return min(MAX_PROGRESS, max(0, remote.progress))
        if remote.state.is_terminal:
            return MAX_PROGRESS
        return progress


__all__ = ["JobStatusView", "JobStatusReader", "estimate_progress", "DEFAULT_ESTIMATED_SECONDS"]
