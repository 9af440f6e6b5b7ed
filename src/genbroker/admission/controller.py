"""
Admission controller.

Pre-flight gates applied before any ledger or provider work: a sliding
window per owner and per network origin, rapid-fire abuse blocking, and
a cap on in-flight jobs per owner.

The in-flight counter is an advisory gauge. Two requests racing through
check_concurrency may both be admitted; the cap bounds abuse, it is not
a safety invariant. What must never happen is a job that stays counted
forever, so every terminal transition releases its slot and reconcile()
sweeps up anything a crashed run left behind.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import AdmissionConfig
from ..errors import ConcurrencyLimitedError, ErrorContext, RateLimitedError
from ..logging import StructuredLogger, get_logger
from .state import AdmissionState, InMemoryAdmissionState

if TYPE_CHECKING:
    from ..jobs import JobStore

UNKNOWN_ORIGIN = "unknown"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    reason: str | None = None
    remaining: int | None = None


@dataclass(frozen=True)
class ConcurrencyDecision:
    allowed: bool
    reason: str | None = None
    in_flight: int = 0


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    reset_in: int
    blocked: bool = False


def client_origin(headers: Mapping[str, str], fallback: str | None = None) -> str:
    """Network origin of a request: first X-Forwarded-For hop, then X-Real-IP."""
    forwarded_for = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip") or headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return fallback or UNKNOWN_ORIGIN


class AdmissionController:
    """Rate and concurrency gates.

    Example:
        ```python
        admission = AdmissionController(AdmissionConfig())

        decision = await admission.check_rate(owner.key, origin)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after)
        ```
    """

    def __init__(
        self,
        config: AdmissionConfig | None = None,
        *,
        state: AdmissionState | None = None,
        clock: Callable[[], float] = time.time,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._config = config or AdmissionConfig()
        self._state = state or InMemoryAdmissionState()
        self._clock = clock
        self._logger = logger or get_logger()

    @property
    def config(self) -> AdmissionConfig:
        return self._config

    @staticmethod
    def _owner_key(owner_key: str) -> str:
        return f"owner:{owner_key}:generation"

    @staticmethod
    def _burst_key(owner_key: str) -> str:
        return f"owner:{owner_key}:burst"

    @staticmethod
    def _origin_key(origin: str) -> str:
        return f"origin:{origin}"

    async def check_rate(self, owner_key: str, origin: str = UNKNOWN_ORIGIN) -> RateDecision:
        """Sliding-window check for the owner, then for its origin.

        Every call counts toward rapid-fire detection; only admitted calls
        count toward the hourly windows.
        """
        cfg = self._config
        now = self._clock()

        for key in (owner_key, origin):
            if key == UNKNOWN_ORIGIN:
                continue
            until = await self._state.blocked_until(key, now)
            if until is not None:
                return self._reject(owner_key, "blocked", max(1, math.ceil(until - now)))

        burst = await self._state.record_burst(self._burst_key(owner_key), now, 1.0)
        if burst > cfg.abuse_requests_per_second:
            until = now + cfg.abuse_block_seconds
            await self._state.block(owner_key, until)
            if origin != UNKNOWN_ORIGIN:
                await self._state.block(origin, until)
            self._logger.warning("Rapid-fire requests blocked", owner_key=owner_key, origin=origin, burst=burst)
            return self._reject(owner_key, "abuse_detected", cfg.abuse_block_seconds)

        owner = await self._state.check_and_hit(
            self._owner_key(owner_key),
            now,
            cfg.generation_window_seconds,
            cfg.generation_max_requests,
        )
        if not owner.allowed:
            return self._reject(
                owner_key,
                "rate_limited",
                _retry_after(owner.oldest, cfg.generation_window_seconds, now),
            )

        if origin != UNKNOWN_ORIGIN:
            by_origin = await self._state.check_and_hit(
                self._origin_key(origin),
                now,
                cfg.origin_window_seconds,
                cfg.origin_max_requests,
            )
            if not by_origin.allowed:
                return self._reject(
                    owner_key,
                    "origin_rate_limited",
                    _retry_after(by_origin.oldest, cfg.origin_window_seconds, now),
                )

        return RateDecision(allowed=True, remaining=cfg.generation_max_requests - owner.count)

    async def check_concurrency(self, owner_key: str) -> ConcurrencyDecision:
        in_flight = len(await self._state.jobs(owner_key))
        limit = self._config.max_concurrent_jobs
        if in_flight >= limit:
            reason = f"Maximum {limit} concurrent jobs allowed. Please wait for current jobs to complete."
            self._logger.log_admission(owner_key, False, "concurrency_limited", in_flight=in_flight)
            return ConcurrencyDecision(allowed=False, reason=reason, in_flight=in_flight)
        return ConcurrencyDecision(allowed=True, in_flight=in_flight)

    async def admit(self, owner_key: str, origin: str = UNKNOWN_ORIGIN, *, job_id: str | None = None) -> None:
        """Run both gates, raising the typed rejection."""
        context = ErrorContext(job_id=job_id, owner_key=owner_key, operation="admission")
        rate = await self.check_rate(owner_key, origin)
        if not rate.allowed:
            raise RateLimitedError(retry_after=rate.retry_after, context=context)
        concurrency = await self.check_concurrency(owner_key)
        if not concurrency.allowed:
            raise ConcurrencyLimitedError(concurrency.reason or "Too many generations in progress", context=context)

    async def job_started(self, owner_key: str, job_id: str) -> int:
        return await self._state.add_job(owner_key, job_id)

    async def job_finished(self, owner_key: str, job_id: str) -> bool:
        return await self._state.remove_job(owner_key, job_id)

    async def in_flight(self, owner_key: str) -> set[str]:
        return await self._state.jobs(owner_key)

    async def rate_limit_status(self, owner_key: str) -> RateLimitStatus:
        cfg = self._config
        now = self._clock()
        until = await self._state.blocked_until(owner_key, now)
        if until is not None:
            return RateLimitStatus(remaining=0, reset_in=max(1, math.ceil(until - now)), blocked=True)
        window = await self._state.window_state(self._owner_key(owner_key), now, cfg.generation_window_seconds)
        remaining = max(0, cfg.generation_max_requests - window.count)
        reset_in = _retry_after(window.oldest, cfg.generation_window_seconds, now) if window.oldest else 0
        return RateLimitStatus(remaining=remaining, reset_in=reset_in)

    async def reset(self, owner_key: str) -> None:
        """Forget the owner's windows and block."""
        await self._state.reset(f"owner:{owner_key}:")
        await self._state.reset(owner_key)

    async def cleanup_expired(self) -> int:
        cfg = self._config
        horizon = max(cfg.generation_window_seconds, cfg.origin_window_seconds)
        return await self._state.cleanup(self._clock(), horizon)

    async def reconcile(self, job_store: JobStore, *, stale_after: float | None = None) -> int:
        """Release counted jobs that are terminal, missing, or stuck.

        Returns the number of slots released.
        """
        stale_after = stale_after if stale_after is not None else self._config.stale_job_seconds
        now = self._clock()
        released = 0
        for owner_key in await self._state.owners_with_jobs():
            for job_id in await self._state.jobs(owner_key):
                job = await job_store.get(job_id)
                stuck = (
                    job is not None
                    and not job.status.is_terminal
                    and job.started_at is not None
                    and now - job.started_at > stale_after
                )
                if job is None or job.status.is_terminal or stuck:
                    if await self._state.remove_job(owner_key, job_id):
                        released += 1
        if released:
            self._logger.info("Released stale concurrency slots", released=released)
        return released

    def _reject(self, owner_key: str, reason: str, retry_after: int) -> RateDecision:
        self._logger.log_admission(owner_key, False, reason, retry_after=retry_after)
        return RateDecision(allowed=False, retry_after=retry_after, reason=reason, remaining=0)


def _retry_after(oldest: float | None, window_seconds: float, now: float) -> int:
    if oldest is None:
        return int(window_seconds)
    return max(1, math.ceil(oldest + window_seconds - now))


__all__ = [
    "UNKNOWN_ORIGIN",
    "RateDecision",
    "ConcurrencyDecision",
    "RateLimitStatus",
    "AdmissionController",
    "client_origin",
]
