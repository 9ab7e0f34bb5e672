"""Prometheus metrics endpoint.

Scraped by Prometheus; plain-text exposition format, not JSON.
Besides the HTTP metrics it exposes the enrollment-core series:

  enrollment_operations_total{operation="enroll",outcome="created"} 41.0
  enrollment_lock_timeouts_total{scope="enrollment"} 0.0
  idempotency_checks_total{result="duplicate"} 3.0
  reconciliation_findings{type="progress_only"} 2.0

Keep /metrics off the public ingress: series names and rates describe
internal behaviour.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
