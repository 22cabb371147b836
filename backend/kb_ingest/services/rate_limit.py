"""
Fixed-window request counters.

A CounterStore is injected wherever a limit is enforced, so there is no
module-level mutable state:

  RedisCounterStore     INCR + EXPIRE in one pipeline; shared by every API
                        replica (queue-mode deployments)
  InMemoryCounterStore  per-process dict; scan mode and tests

Keys are bucketed by window: "rate:<key>:<window_number>".
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from fastapi import HTTPException, status

from kb_ingest.schemas.documents import PipelineErrors

logger = logging.getLogger(__name__)


class CounterStore(ABC):

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> int:
        """Add one to the counter for the current window and return the new count."""

    async def aclose(self) -> None:
        return None


def _window_key(key: str, window_seconds: int, now: float) -> str:
    return f"rate:{key}:{int(now // window_seconds)}"


class InMemoryCounterStore(CounterStore):

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._counts: dict[str, tuple[int, float]] = {}   # key → (count, expires_at)
        self._clock = clock

    async def increment(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        bucket = _window_key(key, window_seconds, now)
        count, expires_at = self._counts.get(bucket, (0, now + window_seconds))
        count += 1
        self._counts[bucket] = (count, expires_at)
        self._evict(now)
        return count

    def _evict(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._counts.items() if exp <= now]
        for k in expired:
            del self._counts[k]


class RedisCounterStore(CounterStore):

    def __init__(self, redis_client: Any, clock: Callable[[], float] = time.time) -> None:
        self._redis = redis_client
        self._clock = clock

    async def increment(self, key: str, window_seconds: int) -> int:
        bucket = _window_key(key, window_seconds, self._clock())
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(bucket)
            pipe.expire(bucket, window_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def aclose(self) -> None:
        await self._redis.aclose()


class RateLimiter:
    """Raises 429 once `limit` calls for a key land in one window."""

    def __init__(self, counters: CounterStore, *, limit: int, window_seconds: int) -> None:
        self._counters = counters
        self._limit = limit
        self._window = window_seconds

    async def check(self, key: str) -> int:
        count = await self._counters.increment(key, self._window)
        if count > self._limit:
            logger.warning("Rate limited | key=%s count=%d limit=%d", key, count, self._limit)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=PipelineErrors.rate_limited(self._limit, self._window).model_dump(),
                headers={"Retry-After": str(self._window)},
            )
        return count
