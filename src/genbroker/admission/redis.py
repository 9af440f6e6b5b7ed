"""
Redis-backed admission state for multi-instance deployments.

Windows are sorted sets scored by request time, blocks are plain keys
with an expiry, and in-flight jobs are sets per owner. Every key carries
a TTL so abandoned state disappears on its own.
"""

from __future__ import annotations

import math
import time
import uuid
from typing import Any

import redis.asyncio as redis

from .state import AdmissionState, WindowSnapshot


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisAdmissionState(AdmissionState):
    """Admission state shared through Redis.

    Example:
        ```python
        client = redis.Redis.from_url("redis://localhost:6379/0")
        state = RedisAdmissionState(client)
        controller = AdmissionController(config, state=state)
        ```
    """

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "genbroker:admission",
        key_ttl_seconds: int = 7200,
    ) -> None:
        self._client = client
        self._prefix = key_prefix
        self._ttl = int(key_ttl_seconds)

    def _window_key(self, key: str) -> str:
        return f"{self._prefix}:win:{key}"

    def _block_key(self, key: str) -> str:
        return f"{self._prefix}:block:{key}"

    def _jobs_key(self, owner_key: str) -> str:
        return f"{self._prefix}:jobs:{owner_key}"

    @property
    def _owners_key(self) -> str:
        return f"{self._prefix}:owners"

    async def _read_window(self, name: str, now: float, window_seconds: float) -> tuple[int, float | None]:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(name, 0, now - window_seconds)
            pipe.zcard(name)
            pipe.zrange(name, 0, 0, withscores=True)
            _, count, oldest = await pipe.execute()
        oldest_ts = float(oldest[0][1]) if oldest else None
        return int(count), oldest_ts

    async def check_and_hit(self, key: str, now: float, window_seconds: float, limit: int) -> WindowSnapshot:
        name = self._window_key(key)
        count, oldest = await self._read_window(name, now, window_seconds)
        if count >= limit:
            return WindowSnapshot(allowed=False, count=count, oldest=oldest)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zadd(name, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(name, max(self._ttl, math.ceil(window_seconds)))
            await pipe.execute()
        return WindowSnapshot(allowed=True, count=count + 1, oldest=oldest if oldest is not None else now)

    async def record_burst(self, key: str, now: float, window_seconds: float) -> int:
        name = self._window_key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zadd(name, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.zremrangebyscore(name, 0, now - window_seconds)
            pipe.zcard(name)
            pipe.expire(name, max(1, math.ceil(window_seconds) * 2))
            _, _, count, _ = await pipe.execute()
        return int(count)

    async def window_state(self, key: str, now: float, window_seconds: float) -> WindowSnapshot:
        count, oldest = await self._read_window(self._window_key(key), now, window_seconds)
        return WindowSnapshot(allowed=True, count=count, oldest=oldest)

    async def block(self, key: str, until: float) -> None:
        current = await self._client.get(self._block_key(key))
        if current is not None and float(_text(current)) >= until:
            return
        ttl_ms = max(1, int((until - time.time()) * 1000))
        await self._client.set(self._block_key(key), str(until), px=ttl_ms)

    async def blocked_until(self, key: str, now: float) -> float | None:
        raw = await self._client.get(self._block_key(key))
        if raw is None:
            return None
        until = float(_text(raw))
        return until if until > now else None

    async def add_job(self, owner_key: str, job_id: str) -> int:
        name = self._jobs_key(owner_key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.sadd(name, job_id)
            pipe.expire(name, self._ttl)
            pipe.sadd(self._owners_key, owner_key)
            pipe.scard(name)
            _, _, _, count = await pipe.execute()
        return int(count)

    async def remove_job(self, owner_key: str, job_id: str) -> bool:
        name = self._jobs_key(owner_key)
        removed = await self._client.srem(name, job_id)
        if await self._client.scard(name) == 0:
            await self._client.srem(self._owners_key, owner_key)
        return bool(removed)

    async def jobs(self, owner_key: str) -> set[str]:
        members = await self._client.smembers(self._jobs_key(owner_key))
        return {_text(m) for m in members}

    async def owners_with_jobs(self) -> list[str]:
        members = await self._client.smembers(self._owners_key)
        return [_text(m) for m in members]

    async def reset(self, key: str) -> None:
        names = [name async for name in self._client.scan_iter(match=f"{self._window_key(key)}*")]
        names.append(self._block_key(key))
        await self._client.delete(*names)

    async def cleanup(self, now: float, max_window_seconds: float) -> int:
        removed = 0
        async for name in self._client.scan_iter(match=f"{self._prefix}:win:*"):
            await self._client.zremrangebyscore(name, 0, now - max_window_seconds)
            if await self._client.zcard(name) == 0:
                await self._client.delete(name)
                removed += 1
        return removed


__all__ = ["RedisAdmissionState"]
