"""
Job types for the generation pipeline.

This module defines the JobStatus enum and GenerationJob dataclass
that form the core of the job lifecycle.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..errors import InvalidTransitionError


class JobKind(str, Enum):
    IMAGE = "IMAGE"
    STORY = "STORY"


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (credit taken, provider about to be called)
    - PROCESSING -> COMPLETED (output persisted)
    - PROCESSING -> FAILED (credit refunded)

    A job never skips PROCESSING: the persisted PROCESSING state is what
    the concurrency gauge and status polling rely on.
    """
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}

    @property
    def external(self) -> str:
        """Client-facing status vocabulary."""
        return self.value.lower()


VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    # Terminal states have no valid transitions
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass(frozen=True)
class GenerationJob:
    """Persistent record of one generation request.

    Written only by the orchestrator; read by the status reader.
    """
    owner_key: str
    kind: JobKind
    input: dict[str, Any] = field(default_factory=dict)

    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    provider: str | None = None
    provider_job_id: str | None = None  # Remote id for fire-and-poll providers

    output: dict[str, Any] | None = None
    error_message: str | None = None
    error_code: str | None = None

    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None

    # Set when settlement could not be confirmed and an operator must look
    needs_reconciliation: bool = False

    def can_transition_to(self, new_status: JobStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: JobStatus, **changes: Any) -> GenerationJob:
        """Create a new GenerationJob with updated status.

        Raises:
            InvalidTransitionError: If the transition is invalid
        """
        if not self.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"Invalid transition: {self.status.value} -> {new_status.value}"
            )

        now = time.time()
        updates: dict[str, Any] = {"status": new_status, "updated_at": now, **changes}
        if new_status == JobStatus.PROCESSING and self.started_at is None:
            updates["started_at"] = now
        if new_status.is_terminal:
            updates["completed_at"] = now
        return replace(self, **updates)

    def complete(self, output: dict[str, Any], provider: str | None = None) -> GenerationJob:
        return self.transition_to(
            JobStatus.COMPLETED,
            output=dict(output),
            provider=provider or self.provider,
        )

    def fail(self, error_message: str, error_code: str | None = None) -> GenerationJob:
        return self.transition_to(JobStatus.FAILED, error_message=error_message, error_code=error_code)

    def with_updates(self, **changes: Any) -> GenerationJob:
        """Non-status changes such as the active provider or its remote id."""
        if "status" in changes:
            raise InvalidTransitionError("Use transition_to() to change status")
        return replace(self, updated_at=time.time(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "owner_key": self.owner_key,
            "kind": self.kind.value,
            "status": self.status.value,
            "provider": self.provider,
            "provider_job_id": self.provider_job_id,
            "input": dict(self.input),
            "output": dict(self.output) if self.output is not None else None,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "needs_reconciliation": self.needs_reconciliation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GenerationJob:
        return cls(
            job_id=data.get("job_id", str(uuid.uuid4())),
            owner_key=data["owner_key"],
            kind=JobKind(data.get("kind", "IMAGE")),
            status=JobStatus(data.get("status", "PENDING")),
            provider=data.get("provider"),
            provider_job_id=data.get("provider_job_id"),
            input=dict(data.get("input") or {}),
            output=dict(data["output"]) if data.get("output") is not None else None,
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            needs_reconciliation=bool(data.get("needs_reconciliation", False)),
        )


__all__ = [
    "JobKind",
    "JobStatus",
    "GenerationJob",
    "VALID_TRANSITIONS",
]
