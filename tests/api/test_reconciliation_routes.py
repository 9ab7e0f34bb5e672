from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from app.models.enrollment import ProgressRecord
from app.repos.ledger_repo import InMemoryFactStore
from app.services.task_queue import REPAIR_QUEUE, task_queue
from tests.conftest import COURSE_ID, STUDENT_ID, bearer


def _drift(store: InMemoryFactStore) -> None:
    store._progress[(STUDENT_ID, COURSE_ID)] = ProgressRecord(
        student_id=STUDENT_ID, course_id=COURSE_ID, total_progress=15, id=store.next_id()
    )


def test_scan_reports_findings(
    client: TestClient, admin_token: str, store: InMemoryFactStore
) -> None:
    _drift(store)
    resp = client.get("/v1/admin/reconciliation", headers=bearer(admin_token))
    assert resp.status_code == 200
    data = resp.json()
    assert data["healthy"] is False
    assert data["counts"]["progress_only"] == 1
    [finding] = data["findings"]
    assert finding["student_id"] == STUDENT_ID
    assert finding["repairable"] is True
    # Scan is read-only
    assert store._enrollments == {}


def test_scan_rejects_bad_tolerance(client: TestClient, admin_token: str) -> None:
    resp = client.get(
        "/v1/admin/reconciliation", params={"tolerance": -1}, headers=bearer(admin_token)
    )
    assert resp.status_code == 422


def test_repair_inline(client: TestClient, admin_token: str, store: InMemoryFactStore) -> None:
    _drift(store)
    resp = client.post("/v1/admin/reconciliation/repair", headers=bearer(admin_token))
    assert resp.status_code == 200
    assert resp.json()["repair"]["repaired"] == 1
    assert store._enrollments[(STUDENT_ID, COURSE_ID)].progress == 15

    after = client.get("/v1/admin/reconciliation", headers=bearer(admin_token))
    assert after.json()["healthy"] is True


def test_repair_in_background_enqueues(
    client: TestClient, admin_token: str, store: InMemoryFactStore
) -> None:
    _drift(store)
    resp = client.post(
        "/v1/admin/reconciliation/repair",
        params={"background": "true", "tolerance": 2},
        headers=bearer(admin_token),
    )
    assert resp.status_code == 202
    assert resp.json()["queued"] is True

    task = asyncio.run(task_queue.dequeue(REPAIR_QUEUE))
    assert task is not None
    assert task.id == resp.json()["task_id"]
    assert task.payload == {"requested_by": "1", "tolerance": 2}
    # Nothing repaired yet
    assert store._enrollments == {}
