"""Background task queue using Redis lists.

Two kinds of work run outside the request/response cycle:

  reconciliation_repair  full scan + additive repair.  Takes a pair lock
                         per fix, so on a large platform it can run for a
                         while; the admin endpoint enqueues it with
                         ?background=true and returns 202.
  maintenance            sweep consumed access requests and purge expired
                         idempotency keys.  Enqueued by cron.

PRODUCER/CONSUMER
------------------
  Producer (API):    LPUSH task onto tasks:<queue> → returns immediately
  Consumer (worker): BRPOP from the list → handler → loops

HEAD-in, TAIL-out = FIFO.  BRPOP blocks inside Redis, so an idle worker
costs no CPU.

DELIVERY
---------
At-most-once: a worker crash mid-task loses that task.  Both task kinds
are safe to lose and safe to repeat (repair re-scans, sweeps re-check),
so the next run picks up whatever was missed.
"""

from __future__ import annotations

import json
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from app.core.metrics import QUEUE_DEPTH
from app.db.redis import redis_pool

REPAIR_QUEUE = "reconciliation_repair"
MAINTENANCE_QUEUE = "maintenance"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class Task:
    """One queued run.  payload is handler arguments, e.g. {"tolerance": 1}."""

    queue: str
    payload: dict
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: str = field(default_factory=_now_iso)

    def waited_seconds(self) -> float:
        return (datetime.now(UTC) - datetime.fromisoformat(self.enqueued_at)).total_seconds()

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, body: str | bytes) -> Task:
        return cls(**json.loads(body))


class TaskQueue(Protocol):
    async def enqueue(self, queue: str, payload: dict) -> Task: ...

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None: ...


class InMemoryTaskQueue:
    """Process-local FIFO for tests and single-process dev.  dequeue never blocks."""

    def __init__(self) -> None:
        self._queues: dict[str, deque[Task]] = {}

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(queue=queue, payload=payload)
        pending = self._queues.setdefault(queue, deque())
        pending.append(task)
        QUEUE_DEPTH.labels(queue_name=queue).set(len(pending))
        return task

    async def dequeue(self, queue: str, timeout: int = 0) -> Task | None:
        pending = self._queues.get(queue)
        if not pending:
            return None
        task = pending.popleft()
        QUEUE_DEPTH.labels(queue_name=queue).set(len(pending))
        return task


class RedisTaskQueue:
    """LPUSH onto tasks:<queue>, BRPOP off the other end."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    @staticmethod
    def _key(queue: str) -> str:
        return f"tasks:{queue}"

    async def enqueue(self, queue: str, payload: dict) -> Task:
        task = Task(queue=queue, payload=payload)
        depth = await self._redis.lpush(self._key(queue), task.to_json())
        QUEUE_DEPTH.labels(queue_name=queue).set(depth)
        return task

    async def dequeue(self, queue: str, timeout: int = 5) -> Task | None:
        popped = await self._redis.brpop(self._key(queue), timeout=timeout)
        if popped is None:
            return None
        _, body = popped
        QUEUE_DEPTH.labels(queue_name=queue).set(await self._redis.llen(self._key(queue)))
        return Task.from_json(body)


if redis_pool is not None:
    task_queue: TaskQueue = RedisTaskQueue(redis_pool)
else:
    task_queue = InMemoryTaskQueue()
