"""Redis connection management.

Mirrors engine.py: REDIS_URL set gives a shared client, unset gives
None and every consumer falls back to an in-memory implementation.

What lives in Redis:
  lock:enrollment:<s>:<c>       cross-process pair locks (with a lease)
  lock:access_request:<s>:<c>   request-creation locks
  cache:progress:<s>:<c>        read-through progress cache
  tasks:<queue>                 background task queues

Nothing here is a source of truth.  Losing Redis means slower reads and
single-process locking until it comes back, never lost enrollments.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Verify connectivity on startup, close the pool on shutdown."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured, locks and cache are in-process")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected")
    except (aioredis.RedisError, OSError):
        # Start anyway; /ready reports the outage
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
