"""Read-through cache for student progress reads.

GET /v1/progress/{course_id} is hit on every page load of the course
player, while the value only changes when the student finishes a video
or quiz.  Reads go through the cache:

    Client → Cache → miss → fact store → populate cache → return
    Client → Cache → hit  → return (no transaction opened)

INVALIDATION
-------------
Two complementary strategies:

  1. TTL: every entry expires after PROGRESS_CACHE_TTL seconds.  The
     safety net if an invalidation is ever missed.

  2. Explicit: every path that changes a pair's enrollment or progress
     (progress sync, admin enroll/unenroll, approval, payment, repair)
     calls invalidate_pair() after its transaction commits.

Invalidation runs AFTER commit, never before: deleting first would let
a concurrent reader repopulate the cache with the old value.

BEST EFFORT
------------
The cache never fails a request.  A Redis error on read counts as a
miss ("error" in cache_operations_total) and the ledgers answer; an
error on write or invalidate is logged and the TTL cleans up.
"""

from __future__ import annotations

import logging
from typing import Protocol

from redis.exceptions import RedisError

from app.core.metrics import CACHE_OPERATIONS
from app.db.redis import redis_pool

logger = logging.getLogger(__name__)

PROGRESS_CACHE_TTL = 300


def progress_cache_key(student_id: int, course_id: int) -> str:
    return f"progress:{student_id}:{course_id}"


class CacheService(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheService:
    """Dict-backed; TTL is ignored.  conftest clears _store between tests."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)


class RedisCacheService:
    """SETEX/GET/DEL under the cache: prefix, apart from lock:* and tasks:*."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"cache:{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"cache:{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"cache:{key}")


if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()


async def get_cached(key: str) -> str | None:
    try:
        value = await cache_service.get(key)
    except (RedisError, OSError):
        logger.warning("Cache read failed key=%s, falling through to ledgers", key)
        CACHE_OPERATIONS.labels(operation="error").inc()
        return None
    CACHE_OPERATIONS.labels(operation="hit" if value is not None else "miss").inc()
    return value


async def put_cached(key: str, value: str, ttl_seconds: int = PROGRESS_CACHE_TTL) -> None:
    try:
        await cache_service.set(key, value, ttl_seconds)
    except (RedisError, OSError):
        logger.warning("Cache write failed key=%s", key)


async def invalidate_pair(student_id: int, course_id: int) -> None:
    key = progress_cache_key(student_id, course_id)
    try:
        await cache_service.delete(key)
    except (RedisError, OSError):
        # Stale for at most PROGRESS_CACHE_TTL
        logger.warning(
            "Cache invalidation failed key=%s",
            key,
            extra={"student_id": student_id, "course_id": course_id, "operation": "invalidate"},
        )
