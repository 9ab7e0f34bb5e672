"""Per-pair operation lock.

Only one enroll/unenroll/sync mutation may run at a time for a given
(student, course) pair.  Without it, a payment webhook and an admin's
"enroll" click can both read "no row", both insert, and one of them
dies on the unique constraint halfway through its transaction.

    async with with_enrollment_lock(student_id, course_id):
        async with fact_store.transaction() as tx:
            await enrollment_ops.enroll_student(tx, ...)

KEYED, NEVER GLOBAL
--------------------
Locks are keyed by "<scope>:<student>:<course>".  Different pairs never
contend, so one slow enrollment cannot stall the rest of the platform.

LOCK ORDER
-----------
A caller holding both scopes for one pair takes "enrollment" first,
then "access_request" (create_request is the only such caller).

TIMEOUT
--------
Acquisition waits at most LOCK_TIMEOUT_SECONDS (enrollment scope) or
half that (access_request scope), then raises LockBusyError, which is
retryable: the HTTP layer answers 503 + Retry-After and a webhook
provider simply redelivers.

TWO IMPLEMENTATIONS
--------------------
  InMemoryEnrollmentLock  asyncio.Lock per key in a registry dict.  The
                          registry itself is guarded by one lock held
                          only for map access; an entry is dropped when
                          nobody holds or waits for it.  Process-local.

  RedisEnrollmentLock     redis-py's Lock (SET NX PX + token-checked
                          release).  Shared by every API process and the
                          worker.  The lease (LOCK_LEASE_SECONDS) means a
                          crashed holder frees the pair on its own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol, TypeVar

from redis.exceptions import LockError

from app.core.config import SETTINGS
from app.core.errors import LockBusyError
from app.core.metrics import LOCK_TIMEOUTS, LOCK_WAIT
from app.db.redis import redis_pool

logger = logging.getLogger(__name__)

T = TypeVar("T")


def lock_key(scope: str, student_id: int, course_id: int) -> str:
    return f"{scope}:{student_id}:{course_id}"


class EnrollmentLock(Protocol):
    def hold(self, key: str, timeout: float) -> AbstractAsyncContextManager[None]: ...


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0  # holders + waiters


class InMemoryEnrollmentLock:
    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._registry_lock = asyncio.Lock()

    def is_locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        async with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1

        scope = key.split(":", 1)[0]
        started = time.perf_counter()
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
            except TimeoutError:
                LOCK_TIMEOUTS.labels(scope=scope).inc()
                logger.warning("Lock busy  key=%s timeout=%.1fs", key, timeout)
                raise LockBusyError(key, timeout) from None
            LOCK_WAIT.labels(scope=scope).observe(time.perf_counter() - started)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            async with self._registry_lock:
                entry.users -= 1
                if entry.users == 0 and self._entries.get(key) is entry:
                    del self._entries[key]


class RedisEnrollmentLock:
    _PREFIX = "lock:"

    def __init__(self, redis_client, *, lease_seconds: float) -> None:
        self._redis = redis_client
        self._lease = lease_seconds

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        scope = key.split(":", 1)[0]
        lock = self._redis.lock(
            f"{self._PREFIX}{key}",
            timeout=self._lease,
            blocking=True,
            blocking_timeout=timeout,
        )
        started = time.perf_counter()
        acquired = await lock.acquire()
        if not acquired:
            LOCK_TIMEOUTS.labels(scope=scope).inc()
            logger.warning("Lock busy  key=%s timeout=%.1fs", key, timeout)
            raise LockBusyError(key, timeout)
        LOCK_WAIT.labels(scope=scope).observe(time.perf_counter() - started)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lease ran out mid-operation; another holder may already own the key
                logger.error("Lock lease expired before release  key=%s", key)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    enrollment_lock: EnrollmentLock = RedisEnrollmentLock(
        redis_pool, lease_seconds=SETTINGS.lock_lease_seconds
    )
else:
    enrollment_lock = InMemoryEnrollmentLock()


def with_enrollment_lock(
    student_id: int, course_id: int, timeout: float | None = None
) -> AbstractAsyncContextManager[None]:
    return enrollment_lock.hold(
        lock_key("enrollment", student_id, course_id),
        timeout if timeout is not None else SETTINGS.lock_timeout_seconds,
    )


def with_request_lock(
    student_id: int, course_id: int, timeout: float | None = None
) -> AbstractAsyncContextManager[None]:
    return enrollment_lock.hold(
        lock_key("access_request", student_id, course_id),
        timeout if timeout is not None else SETTINGS.lock_timeout_seconds / 2,
    )


async def run_with_enrollment_lock(
    student_id: int,
    course_id: int,
    fn: Callable[[], Awaitable[T]],
    timeout: float | None = None,
) -> T:
    """Callable form: acquire the pair lock, await fn(), always release."""
    async with with_enrollment_lock(student_id, course_id, timeout):
        return await fn()
