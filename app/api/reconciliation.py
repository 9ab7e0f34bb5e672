from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.dependencies import require_role
from app.models.principal import Principal
from app.repos.fact_store import fact_store
from app.services import reconciliation
from app.services.task_queue import REPAIR_QUEUE, task_queue

activity = logging.getLogger("app.activity")

router = APIRouter(prefix="/v1/admin/reconciliation", tags=["reconciliation"])

RequireAdmin = Annotated[Principal, Depends(require_role("admin"))]
Tolerance = Annotated[int | None, Query(ge=0, le=100)]


@router.get("")
async def scan_ledgers(principal: RequireAdmin, tolerance: Tolerance = None) -> dict:
    """Read-only report: findings, counts per type, ledger stats."""
    report = await reconciliation.scan(fact_store, tolerance)
    return report.to_dict()


@router.post("/repair")
async def repair_ledgers(
    principal: RequireAdmin,
    response: Response,
    tolerance: Tolerance = None,
    background: bool = False,
) -> dict:
    """Scan and apply every repairable fix.

    With ?background=true the run is queued for the worker and the
    response is 202 with the task id.
    """
    if background:
        task = await task_queue.enqueue(
            REPAIR_QUEUE, {"requested_by": principal.user_id, "tolerance": tolerance}
        )
        activity.info("admin=%s queued reconciliation repair task=%s", principal.user_id, task.id)
        response.status_code = status.HTTP_202_ACCEPTED
        return {"queued": True, "task_id": task.id}

    report, summary = await reconciliation.scan_and_repair(fact_store, tolerance)
    activity.info(
        "admin=%s ran reconciliation repair findings=%d repaired=%d errors=%d",
        principal.user_id,
        len(report.findings),
        summary.repaired,
        len(summary.errors),
    )
    return {"report": report.to_dict(), "repair": summary.to_dict()}
