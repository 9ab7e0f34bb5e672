"""Demo: walk every enrollment write path using FastAPI TestClient.

Run with (no DATABASE_URL / REDIS_URL, everything in-memory):
    python scripts/demo_enrollment_flow.py
"""

from __future__ import annotations

import json
from dataclasses import replace

from fastapi.testclient import TestClient

from app.main import app
from app.models.course import Course
from app.models.payment import Payment
from app.models.user import User
from app.repos.fact_store import fact_store
from app.repos.ledger_repo import InMemoryFactStore
from app.services import token_service

ADMIN_ID = 1
STUDENT_ID = 11
COURSE_ID = 5
PAID_COURSE_ID = 6
PUBLIC_COURSE_ID = 8


def main() -> None:
    if not isinstance(fact_store, InMemoryFactStore):
        raise SystemExit("Unset DATABASE_URL: the demo seeds the in-memory store")

    # ── Seed reference data ─────────────────────────────────────────
    fact_store.add_user(User(id=ADMIN_ID, email="admin@example.com", role="admin"))
    fact_store.add_user(User(id=STUDENT_ID, email="student@example.com", name="Sam"))
    fact_store.add_course(Course(id=COURSE_ID, title="Pharmacology", status="published"))
    fact_store.add_course(Course(id=PAID_COURSE_ID, title="Anatomy", status="published"))
    fact_store.add_course(
        Course(id=PUBLIC_COURSE_ID, title="First Aid", status="active", is_public=True)
    )
    fact_store.add_payment(
        Payment(user_id=STUDENT_ID, course_id=PAID_COURSE_ID, session_id="cs_demo_1")
    )

    admin = {
        "Authorization": "Bearer "
        + token_service.create_access_token(sub=str(ADMIN_ID), roles=["admin"])
    }
    student = {
        "Authorization": "Bearer "
        + token_service.create_access_token(sub=str(STUDENT_ID), roles=["student"])
    }
    client = TestClient(app)

    # ── Step 1: student asks for access ─────────────────────────────
    r = client.post("/v1/access-requests", json={"course_id": COURSE_ID}, headers=student)
    request_id = r.json()["id"]
    print(f"1. POST /v1/access-requests            → {r.status_code}  id={request_id}")

    r = client.post("/v1/access-requests", json={"course_id": COURSE_ID}, headers=student)
    print(f"2. POST /v1/access-requests (again)    → {r.status_code}  {r.json()['error']}")

    # ── Step 2: admin approves ──────────────────────────────────────
    r = client.post(f"/v1/admin/access-requests/{request_id}/approve", headers=admin)
    print(f"3. POST .../approve                    → {r.status_code}  enrolled={r.json()['enrolled']}")

    # ── Step 3: progress sync + cached read ─────────────────────────
    r = client.post(f"/v1/progress/{COURSE_ID}", json={"progress": 40}, headers=student)
    print(f"4. POST /v1/progress/{COURSE_ID}               → {r.status_code}  progress={r.json()['progress']}")
    r = client.get(f"/v1/progress/{COURSE_ID}", headers=student)
    print(f"5. GET  /v1/progress/{COURSE_ID}               → {r.status_code}  progress={r.json()['progress']}")

    # ── Step 4: the provider delivers the same webhook twice ────────
    event = {
        "id": "evt_demo_1",
        "type": "checkout.session.completed",
        "data": {"session_id": "cs_demo_1", "payment_intent_id": "pi_demo_1"},
    }
    for attempt in (1, 2):
        r = client.post("/v1/payments/webhook", content=json.dumps(event))
        body = r.json()
        print(
            f"{5 + attempt}. POST /v1/payments/webhook (#{attempt})   → {r.status_code}  "
            f"duplicate={body['duplicate']}"
        )

    # ── Step 5: simulate drift and let reconciliation repair it ─────
    pair = (STUDENT_ID, PAID_COURSE_ID)
    del fact_store._progress[pair]
    enrollment = fact_store._enrollments[(STUDENT_ID, COURSE_ID)]
    fact_store._enrollments[(STUDENT_ID, COURSE_ID)] = replace(enrollment, progress=55)

    r = client.get("/v1/admin/reconciliation", headers=admin)
    print(f"8. GET  /v1/admin/reconciliation       → {r.status_code}  counts=", end="")
    print({k: v for k, v in r.json()["counts"].items() if v})

    r = client.post("/v1/admin/reconciliation/repair", headers=admin)
    print(f"9. POST /v1/admin/reconciliation/repair → {r.status_code}  repair={r.json()['repair']}")

    r = client.get("/v1/admin/reconciliation", headers=admin)
    print(f"10. GET /v1/admin/reconciliation       → {r.status_code}  healthy={r.json()['healthy']}")

    # ── Step 6: self-enroll in a public course, then the status view ─
    r = client.post("/v1/enroll", json={"course_id": PUBLIC_COURSE_ID}, headers=student)
    print(f"11. POST /v1/enroll                     → {r.status_code}  enrolled={r.json()['enrolled']}")

    r = client.get(f"/v1/admin/students/{STUDENT_ID}/enrollments", headers=admin)
    print(f"12. GET  .../students/{STUDENT_ID}/enrollments  → {r.status_code}  ", end="")
    print({c["course_id"]: c["enrollment_status"] for c in r.json()})


if __name__ == "__main__":
    main()
