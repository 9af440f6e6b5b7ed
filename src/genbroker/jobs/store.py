"""
Job store implementations.

This module provides the JobStore interface and an in-memory
implementation for persisting generation jobs.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..errors import ErrorContext, JobConflictError
from .types import GenerationJob, JobKind, JobStatus


@dataclass
class JobFilter:
    """Filter criteria for listing jobs."""
    owner_key: str | None = None
    kind: JobKind | None = None
    status: JobStatus | set[JobStatus] | None = None
    started_before: float | None = None
    created_before: float | None = None
    needs_reconciliation: bool | None = None
    limit: int = 100
    offset: int = 0
    order_desc: bool = True

    def matches(self, job: GenerationJob) -> bool:
        """Check if a job matches this filter."""
        if self.owner_key and job.owner_key != self.owner_key:
            return False
        if self.kind and job.kind != self.kind:
            return False
        if self.status:
            if isinstance(self.status, set):
                if job.status not in self.status:
                    return False
            elif job.status != self.status:
                return False
        if self.started_before is not None:
            if job.started_at is None or job.started_at >= self.started_before:
                return False
        if self.created_before is not None and job.created_at >= self.created_before:
            return False
        if self.needs_reconciliation is not None and job.needs_reconciliation != self.needs_reconciliation:
            return False
        return True


class JobStore(ABC):
    """Abstract interface for job persistence."""

    @abstractmethod
    async def create(self, job: GenerationJob) -> GenerationJob:
        """Create a new job record.

        Raises:
            ValueError: If job_id already exists
        """
        ...

    @abstractmethod
    async def get(self, job_id: str) -> GenerationJob | None:
        ...

    @abstractmethod
    async def update(self, job: GenerationJob, *, expected_status: JobStatus | None = None) -> GenerationJob:
        """Replace an existing job record.

        With expected_status the write only lands while the stored row is
        still in that status, so two settlers cannot both finish one job.

        Raises:
            ValueError: If job doesn't exist
            JobConflictError: If the stored status is not expected_status
        """
        ...

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Delete a job by ID. Returns True if deleted."""
        ...

    @abstractmethod
    async def list(self, filter: JobFilter | None = None) -> list[GenerationJob]:
        ...

    async def count(self, filter: JobFilter | None = None) -> int:
        return len(await self.list(filter))


def job_conflict(job_id: str, expected: JobStatus, found: JobStatus) -> JobConflictError:
    return JobConflictError(
        f"Job {job_id} is {found.value}, expected {expected.value}",
        current_status=found.value,
        context=ErrorContext(job_id=job_id, operation="update_job"),
    )


class InMemoryJobStore(JobStore):
    """In-memory job store implementation.

    Suitable for testing and single-process deployments.
    Thread-safe via asyncio.Lock.
    """

    def __init__(self):
        self._jobs: dict[str, GenerationJob] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job {job.job_id} already exists")
            self._jobs[job.job_id] = job
            return job

    async def get(self, job_id: str) -> GenerationJob | None:
        async with self._lock:
            return self._jobs.get(job_id)

    async def update(self, job: GenerationJob, *, expected_status: JobStatus | None = None) -> GenerationJob:
        async with self._lock:
            current = self._jobs.get(job.job_id)
            if current is None:
                raise ValueError(f"Job {job.job_id} not found")
            if expected_status is not None and current.status != expected_status:
                raise job_conflict(job.job_id, expected_status, current.status)
            self._jobs[job.job_id] = job
            return job

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def list(self, filter: JobFilter | None = None) -> list[GenerationJob]:
        async with self._lock:
            jobs = list(self._jobs.values())

            if filter:
                jobs = [j for j in jobs if filter.matches(j)]
                jobs.sort(key=lambda j: j.created_at, reverse=filter.order_desc)
                jobs = jobs[filter.offset:filter.offset + filter.limit]

            return jobs

    async def clear(self) -> None:
        """Clear all jobs (for testing)."""
        async with self._lock:
            self._jobs.clear()


__all__ = ["JobFilter", "JobStore", "InMemoryJobStore"]
