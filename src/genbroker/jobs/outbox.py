"""
Settlement outbox.

When the orchestrator cannot confirm a settle step (refund the credit and
fail the job, or persist the output and complete it) after its in-line
retries, it records the step here. The reconciliation sweep replays due
entries with exponential backoff until they succeed or run out of
attempts, at which point the entry is left as failed for an operator.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class SettleAction(str, Enum):
    REFUND_AND_FAIL = "refund_and_fail"
    COMPLETE = "complete"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass(frozen=True)
class OutboxEntry:
    job_id: str
    owner_key: str
    action: SettleAction
    payload: dict[str, Any] = field(default_factory=dict)
    outbox_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OutboxStatus = OutboxStatus.PENDING
    attempt_count: int = 0
    next_attempt_at: float = field(default_factory=time.time)
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)


class SettlementOutbox(ABC):
    @abstractmethod
    async def enqueue(self, entry: OutboxEntry) -> str:
        """Record a settle step. A pending entry for the same job is replaced.

        Returns:
            The outbox id.
        """
        ...

    @abstractmethod
    async def due(self, now: float, limit: int = 20) -> list[OutboxEntry]:
        """Pending entries whose next attempt time has passed, oldest first."""
        ...

    @abstractmethod
    async def mark_settled(self, outbox_id: str) -> None:
        ...

    @abstractmethod
    async def reschedule(self, outbox_id: str, attempt_count: int, next_attempt_at: float, error: str | None) -> None:
        ...

    @abstractmethod
    async def mark_failed(self, outbox_id: str, attempt_count: int, error: str | None) -> None:
        ...

    @abstractmethod
    async def list(self, status: OutboxStatus | None = None) -> list[OutboxEntry]:
        ...


class InMemorySettlementOutbox(SettlementOutbox):
    def __init__(self) -> None:
        self._entries: dict[str, OutboxEntry] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, entry: OutboxEntry) -> str:
        async with self._lock:
            for existing in self._entries.values():
                if existing.job_id == entry.job_id and existing.status == OutboxStatus.PENDING:
                    self._entries[existing.outbox_id] = replace(
                        existing,
                        action=entry.action,
                        payload=dict(entry.payload),
                        next_attempt_at=entry.next_attempt_at,
                        last_error=entry.last_error,
                    )
                    return existing.outbox_id
            self._entries[entry.outbox_id] = entry
            return entry.outbox_id

    async def due(self, now: float, limit: int = 20) -> list[OutboxEntry]:
        async with self._lock:
            pending = [
                e for e in self._entries.values()
                if e.status == OutboxStatus.PENDING and e.next_attempt_at <= now
            ]
            pending.sort(key=lambda e: e.next_attempt_at)
            return pending[:limit]

    async def mark_settled(self, outbox_id: str) -> None:
        async with self._lock:
            entry = self._entries[outbox_id]
            self._entries[outbox_id] = replace(entry, status=OutboxStatus.SETTLED, last_error=None)

    async def reschedule(self, outbox_id: str, attempt_count: int, next_attempt_at: float, error: str | None) -> None:
        async with self._lock:
            entry = self._entries[outbox_id]
            self._entries[outbox_id] = replace(
                entry,
                attempt_count=attempt_count,
                next_attempt_at=next_attempt_at,
                last_error=error,
            )

    async def mark_failed(self, outbox_id: str, attempt_count: int, error: str | None) -> None:
        async with self._lock:
            entry = self._entries[outbox_id]
            self._entries[outbox_id] = replace(
                entry,
                status=OutboxStatus.FAILED,
                attempt_count=attempt_count,
                last_error=error,
            )

    async def list(self, status: OutboxStatus | None = None) -> list[OutboxEntry]:
        async with self._lock:
            return [e for e in self._entries.values() if status is None or e.status == status]


def outbox_retry_delay_seconds(attempt_count: int) -> int:
    base = min(300, 2 ** min(10, max(0, attempt_count)))
    jitter = random.randint(0, 5)
    return int(base + jitter)


__all__ = [
    "SettleAction",
    "OutboxStatus",
    "OutboxEntry",
    "SettlementOutbox",
    "InMemorySettlementOutbox",
    "outbox_retry_delay_seconds",
]
