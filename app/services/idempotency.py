"""Idempotency store: at-least-once delivery, at-most-once side effects.

Payment providers redeliver webhooks until they see a 2xx.  Without a
record of "event E was already handled", every redelivery would enroll
the student again (or, worse, double-charge downstream systems).

KEY DERIVATION
---------------
    key = "<operation>:" + sha256(canonical JSON of params)

Canonical JSON sorts keys and drops whitespace, so {"a": 1, "b": 2} and
{"b": 2, "a": 1} hash identically.  The operation name stays readable
in the key, which makes `SELECT ... WHERE key LIKE 'payment_webhook:%'`
a useful debugging query.

WHAT GETS STORED
-----------------
`fn` returns a JSON-serialisable *domain outcome*.  That includes
negative outcomes like {"processed": False, "reason": "payment_not_found"}:
redelivering the same event would produce the same answer, so the
answer is recorded and replayed.

If `fn` RAISES, nothing is stored.  Exceptions mean "transport or
database trouble", and the upstream redelivery is exactly the retry we
want.

FAILURE SEMANTICS
------------------
  - Store read fails   → fail open: log, count, treat as a miss.  The
                         enrollment operations verify before creating,
                         so running `fn` twice is safe at the data level.
  - Store write fails  → best-effort: log and return the result anyway.
  - Two racing writers → first writer wins (ON CONFLICT DO NOTHING); the
                         loser's result is returned to its caller but
                         not recorded.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import SETTINGS
from app.core.metrics import IDEMPOTENCY_CHECKS
from app.db.engine import async_session_factory
from app.db.tables import IdempotencyKeyRow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class StoredResult:
    key: str
    operation: str
    result: Any
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class IdempotentResult:
    result: Any
    was_duplicate: bool


def generate_idempotency_key(operation: str, params: dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode()).hexdigest()
    return f"{operation}:{digest}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IdempotencyStore(Protocol):
    async def get(self, key: str) -> StoredResult | None:
        """Return the record for `key` unless it is missing or expired."""
        ...

    async def put(
        self, key: str, operation: str, result_json: str, expires_at: datetime
    ) -> bool:
        """Record a result.  Returns False when another writer got there first."""
        ...

    async def purge_expired(self) -> int: ...


class InMemoryIdempotencyStore:
    """In-memory store for tests.  Expiry is enforced on read."""

    def __init__(self) -> None:
        self._records: dict[str, StoredResult] = {}

    async def get(self, key: str) -> StoredResult | None:
        record = self._records.get(key)
        if record is None or record.expires_at <= _utcnow():
            return None
        return record

    async def put(
        self, key: str, operation: str, result_json: str, expires_at: datetime
    ) -> bool:
        existing = self._records.get(key)
        if existing is not None and existing.expires_at > _utcnow():
            return False
        self._records[key] = StoredResult(
            key=key,
            operation=operation,
            result=json.loads(result_json),
            created_at=_utcnow(),
            expires_at=expires_at,
        )
        return True

    async def purge_expired(self) -> int:
        now = _utcnow()
        expired = [k for k, r in self._records.items() if r.expires_at <= now]
        for k in expired:
            del self._records[k]
        return len(expired)


class PgIdempotencyStore:
    """idempotency_keys table.  Uses its own short transactions, never the caller's.

    Recording must survive even when the caller's ledger transaction is
    long gone, and a failed record must never roll back a committed
    side effect.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> StoredResult | None:
        stmt = select(IdempotencyKeyRow).where(
            IdempotencyKeyRow.key == key,
            IdempotencyKeyRow.expires_at > _utcnow(),
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return StoredResult(
            key=row.key,
            operation=row.operation,
            result=json.loads(row.result) if row.result else None,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    async def put(
        self, key: str, operation: str, result_json: str, expires_at: datetime
    ) -> bool:
        stmt = (
            pg_insert(IdempotencyKeyRow)
            .values(key=key, operation=operation, result=result_json, expires_at=expires_at)
            .on_conflict_do_nothing(index_elements=["key"])
        )
        async with self._session_factory() as session:
            async with session.begin():
                # An expired record with the same key blocks the insert; clear it first
                await session.execute(
                    delete(IdempotencyKeyRow).where(
                        IdempotencyKeyRow.key == key,
                        IdempotencyKeyRow.expires_at <= _utcnow(),
                    )
                )
                result = await session.execute(stmt)
        return result.rowcount > 0

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(IdempotencyKeyRow).where(
                        IdempotencyKeyRow.expires_at <= _utcnow()
                    )
                )
        return result.rowcount


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if async_session_factory is not None:
    idempotency_store: IdempotencyStore = PgIdempotencyStore(async_session_factory)
else:
    idempotency_store = InMemoryIdempotencyStore()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def check_idempotency(key: str) -> StoredResult | None:
    """Pure read.  Store failures fail open (treated as a miss)."""
    try:
        record = await idempotency_store.get(key)
    except (SQLAlchemyError, OSError):
        logger.warning("Idempotency check failed, treating as miss key=%s", key, exc_info=True)
        IDEMPOTENCY_CHECKS.labels(result="error").inc()
        return None
    IDEMPOTENCY_CHECKS.labels(result="duplicate" if record else "miss").inc()
    return record


async def execute_with_idempotency(
    operation: str,
    params: dict[str, Any],
    fn: Callable[[], Awaitable[T]],
    ttl_hours: int | None = None,
) -> IdempotentResult:
    """Run `fn` at most once per (operation, params) within the TTL window."""
    ttl = ttl_hours if ttl_hours is not None else SETTINGS.idempotency_ttl_hours
    key = generate_idempotency_key(operation, params)

    existing = await check_idempotency(key)
    if existing is not None:
        logger.info("Duplicate operation skipped  operation=%s key=%s", operation, key)
        return IdempotentResult(result=existing.result, was_duplicate=True)

    # Exceptions propagate unrecorded: the caller's retry is the recovery path
    result = await fn()

    try:
        stored = await idempotency_store.put(
            key,
            operation,
            json.dumps(result, default=str),
            _utcnow() + timedelta(hours=ttl),
        )
        if not stored:
            logger.info("Idempotency record already present  operation=%s key=%s", operation, key)
    except (SQLAlchemyError, OSError, TypeError, ValueError):
        logger.error(
            "Failed to record idempotency result  operation=%s key=%s",
            operation,
            key,
            exc_info=True,
        )

    return IdempotentResult(result=result, was_duplicate=False)


def idempotent(
    operation: str,
    key_params: Iterable[str],
    ttl_hours: int | None = None,
):
    """Decorator: make an async function idempotent on some of its arguments.

    Usage::

        @idempotent("payment_failed", key_params=("event_id", "payment_intent_id"), ttl_hours=24)
        async def mark_failed(event_id: str, payment_intent_id: str) -> dict: ...

    The decorated function returns an IdempotentResult.
    """
    names = tuple(key_params)

    def decorator(func: Callable[..., Awaitable[Any]]):
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> IdempotentResult:
            bound = signature.bind(*args, **kwargs)
            bound.apply_defaults()
            params = {name: bound.arguments[name] for name in names}
            return await execute_with_idempotency(
                operation, params, lambda: func(*args, **kwargs), ttl_hours
            )

        return wrapper

    return decorator


async def purge_expired() -> int:
    count = await idempotency_store.purge_expired()
    if count:
        logger.info("Purged expired idempotency keys  count=%d", count)
    return count
