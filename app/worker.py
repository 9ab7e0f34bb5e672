"""Background worker process.

RUN:  python -m app.worker

Same image as the API, different command:
  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker

Queues:
  reconciliation_repair  scan both ledgers, apply additive repairs
  maintenance            sweep consumed access requests, purge expired
                         idempotency keys

The worker talks to the same Postgres and Redis as the API, so its
repairs take the same per-pair locks the API's enrollment writes take.

THE WORKER LOOP
----------------
Poll every registered queue round-robin, dequeue one task, dispatch to
its handler, log the result.  A failing task is logged and dropped;
both task kinds are safe to run again on the next trigger.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.repos.fact_store import fact_store
from app.services import access_requests, idempotency, reconciliation
from app.services.task_queue import MAINTENANCE_QUEUE, REPAIR_QUEUE, task_queue

TaskHandler = Callable[[dict], Coroutine[Any, Any, dict]]

logger = logging.getLogger("app.worker")


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

HANDLERS: dict[str, TaskHandler] = {}


def register_handler(queue: str):
    """Decorator: register a coroutine as the handler for a queue."""

    def decorator(func):
        HANDLERS[queue] = func
        return func

    return decorator


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


@register_handler(REPAIR_QUEUE)
async def handle_reconciliation_repair(payload: dict) -> dict:
    """Scan, repair what is repairable, and report what is left."""
    report, summary = await reconciliation.scan_and_repair(
        fact_store, tolerance=payload.get("tolerance")
    )
    logger.info(
        "Repair run requested_by=%s findings=%d repaired=%d errors=%d",
        payload.get("requested_by"),
        len(report.findings),
        summary.repaired,
        len(summary.errors),
    )
    return {"report": report.to_dict(), "repair": summary.to_dict()}


@register_handler(MAINTENANCE_QUEUE)
async def handle_maintenance(payload: dict) -> dict:
    sweep = await access_requests.sweep_processed_requests(fact_store)
    purged = await idempotency.purge_expired()
    logger.info(
        "Maintenance done requests_deleted=%d idempotency_purged=%d",
        sweep.total_deleted,
        purged,
    )
    return {"requests_deleted": sweep.total_deleted, "idempotency_keys_purged": purged}


# ---------------------------------------------------------------------------
# Main worker loop
# ---------------------------------------------------------------------------


async def run_once(queue_name: str, timeout: int = 0) -> dict | None:
    """Process at most one task from `queue_name`.  Returns the handler result."""
    task = await task_queue.dequeue(queue_name, timeout=timeout)
    if task is None:
        return None
    waited = task.waited_seconds()
    result = await HANDLERS[queue_name](task.payload)
    logger.info("Task %s on [%s] completed waited=%.1fs", task.id, queue_name, waited)
    return result


async def run_worker() -> None:
    """Poll all registered queues and dispatch tasks to handlers."""
    queues = list(HANDLERS.keys())
    logger.info("Worker started, listening on queues: %s", queues)

    while True:
        for queue_name in queues:
            try:
                await run_once(queue_name, timeout=1)
            except Exception:
                # Dropped; the next scheduled run re-derives the work
                logger.exception("Task on [%s] failed", queue_name)


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
