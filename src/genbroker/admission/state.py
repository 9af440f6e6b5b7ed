"""
Ephemeral admission state.

Rolling request windows, block lists, and the set of in-flight jobs per
owner. None of this is durable: losing it only loosens admission for a
while, it never affects credit correctness.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass


@dataclass(frozen=True)
class WindowSnapshot:
    """Result of one sliding-window check."""
    allowed: bool
    count: int
    oldest: float | None = None  # Timestamp of the oldest request still in the window


class AdmissionState(ABC):
    """Storage for admission heuristics.

    Implementations only need to be eventually consistent; a brief
    over- or under-count is acceptable.
    """

    @abstractmethod
    async def check_and_hit(self, key: str, now: float, window_seconds: float, limit: int) -> WindowSnapshot:
        """Admit one request into the window unless it already holds `limit` requests."""
        ...

    @abstractmethod
    async def record_burst(self, key: str, now: float, window_seconds: float) -> int:
        """Record a request unconditionally and return how many fall inside the window."""
        ...

    @abstractmethod
    async def window_state(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        """Read the window without recording a request."""
        ...

    @abstractmethod
    async def block(self, key: str, until: float) -> None:
        ...

    @abstractmethod
    async def blocked_until(self, key: str, now: float) -> float | None:
        """Block expiry for key, or None if it is not blocked."""
        ...

    @abstractmethod
    async def add_job(self, owner_key: str, job_id: str) -> int:
        """Mark a job in flight. Returns the owner's in-flight count."""
        ...

    @abstractmethod
    async def remove_job(self, owner_key: str, job_id: str) -> bool:
        """Release a job. Returns False if it was not tracked."""
        ...

    @abstractmethod
    async def jobs(self, owner_key: str) -> set[str]:
        ...

    @abstractmethod
    async def owners_with_jobs(self) -> list[str]:
        ...

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget every window and block recorded under key."""
        ...

    @abstractmethod
    async def cleanup(self, now: float, max_window_seconds: float) -> int:
        """Drop expired windows and blocks. Returns the number of keys removed."""
        ...


class InMemoryAdmissionState(AdmissionState):
    """Process-local admission state.

    Suitable for testing and single-process deployments.
    """

    def __init__(self) -> None:
        self._windows: dict[str, deque[float]] = {}
        self._blocks: dict[str, float] = {}
        self._jobs: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, key: str, now: float, window_seconds: float) -> deque[float]:
        window = self._windows.setdefault(key, deque())
        cutoff = now - window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    async def check_and_hit(self, key: str, now: float, window_seconds: float, limit: int) -> WindowSnapshot:
        async with self._lock:
            window = self._prune(key, now, window_seconds)
            if len(window) >= limit:
                return WindowSnapshot(allowed=False, count=len(window), oldest=window[0])
            window.append(now)
            return WindowSnapshot(allowed=True, count=len(window), oldest=window[0])

    async def record_burst(self, key: str, now: float, window_seconds: float) -> int:
        async with self._lock:
            window = self._prune(key, now, window_seconds)
            window.append(now)
            return len(window)

    async def window_state(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        async with self._lock:
            window = self._prune(key, now, window_seconds)
            return WindowSnapshot(allowed=True, count=len(window), oldest=window[0] if window else None)

    async def block(self, key: str, until: float) -> None:
        async with self._lock:
            self._blocks[key] = max(until, self._blocks.get(key, 0.0))

    async def blocked_until(self, key: str, now: float) -> float | None:
        async with self._lock:
            until = self._blocks.get(key)
            if until is None:
                return None
            if until <= now:
                del self._blocks[key]
                return None
            return until

    async def add_job(self, owner_key: str, job_id: str) -> int:
        async with self._lock:
            jobs = self._jobs.setdefault(owner_key, set())
            jobs.add(job_id)
            return len(jobs)

    async def remove_job(self, owner_key: str, job_id: str) -> bool:
        async with self._lock:
            jobs = self._jobs.get(owner_key)
            if not jobs or job_id not in jobs:
                return False
            jobs.discard(job_id)
            if not jobs:
                del self._jobs[owner_key]
            return True

    async def jobs(self, owner_key: str) -> set[str]:
        async with self._lock:
            return set(self._jobs.get(owner_key, set()))

    async def owners_with_jobs(self) -> list[str]:
        async with self._lock:
            return list(self._jobs)

    async def reset(self, key: str) -> None:
        async with self._lock:
            for name in [k for k in self._windows if k.startswith(key)]:
                del self._windows[name]
            self._blocks.pop(key, None)

    async def cleanup(self, now: float, max_window_seconds: float) -> int:
        async with self._lock:
            removed = 0
            for key in list(self._windows):
                window = self._prune(key, now, max_window_seconds)
                if not window:
                    del self._windows[key]
                    removed += 1
            for key, until in list(self._blocks.items()):
                if until <= now:
                    del self._blocks[key]
                    removed += 1
            return removed


__all__ = ["WindowSnapshot", "AdmissionState", "InMemoryAdmissionState"]
