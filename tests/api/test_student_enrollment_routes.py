from __future__ import annotations

from fastapi.testclient import TestClient

from app.repos.ledger_repo import InMemoryFactStore
from tests.conftest import (
    COURSE_ID,
    DRAFT_COURSE_ID,
    OTHER_COURSE_ID,
    PUBLIC_COURSE_ID,
    STUDENT_ID,
    bearer,
)


def _self_enroll(client: TestClient, token: str, course_id: int = PUBLIC_COURSE_ID):
    return client.post("/v1/enroll", json={"course_id": course_id}, headers=bearer(token))


# ---- POST /v1/enroll ----


def test_student_enrolls_in_public_course(
    client: TestClient, student_token: str, store: InMemoryFactStore
) -> None:
    resp = _self_enroll(client, student_token)
    assert resp.status_code == 200
    assert resp.json() == {
        "student_id": STUDENT_ID,
        "course_id": PUBLIC_COURSE_ID,
        "enrolled": True,
        "pending_requests_removed": 0,
    }
    pair = (STUDENT_ID, PUBLIC_COURSE_ID)
    assert store._enrollments[pair].source == "self"
    assert pair in store._progress


def test_gated_course_requires_approval(
    client: TestClient, student_token: str, store: InMemoryFactStore
) -> None:
    resp = _self_enroll(client, student_token, course_id=COURSE_ID)
    assert resp.status_code == 409
    assert resp.json()["error"] == "requires_approval"
    assert store._enrollments == {}


def test_closed_course_is_unavailable(client: TestClient, student_token: str) -> None:
    resp = _self_enroll(client, student_token, course_id=DRAFT_COURSE_ID)
    assert resp.status_code == 409
    assert resp.json()["error"] == "course_unavailable"


def test_self_enroll_twice_returns_409(client: TestClient, student_token: str) -> None:
    _self_enroll(client, student_token)
    resp = _self_enroll(client, student_token)
    assert resp.status_code == 409
    assert resp.json()["error"] == "already_enrolled"


def test_self_enroll_consumes_pending_request(client: TestClient, student_token: str) -> None:
    client.post(
        "/v1/access-requests",
        json={"course_id": PUBLIC_COURSE_ID},
        headers=bearer(student_token),
    )
    resp = _self_enroll(client, student_token)
    assert resp.json()["pending_requests_removed"] == 1


def test_self_enroll_requires_token(client: TestClient) -> None:
    resp = client.post("/v1/enroll", json={"course_id": PUBLIC_COURSE_ID})
    assert resp.status_code == 401


# ---- status view ----


def test_student_sees_own_status(client: TestClient, student_token: str) -> None:
    _self_enroll(client, student_token)
    client.post(
        "/v1/access-requests", json={"course_id": COURSE_ID}, headers=bearer(student_token)
    )

    resp = client.get("/v1/enrollments", headers=bearer(student_token))
    assert resp.status_code == 200
    statuses = {c["course_id"]: c["enrollment_status"] for c in resp.json()}
    assert statuses == {
        COURSE_ID: "requested",
        OTHER_COURSE_ID: "available",
        PUBLIC_COURSE_ID: "enrolled",
    }


def test_admin_reads_any_student_status(
    client: TestClient, student_token: str, admin_token: str
) -> None:
    _self_enroll(client, student_token)
    resp = client.get(f"/v1/admin/students/{STUDENT_ID}/enrollments", headers=bearer(admin_token))
    assert resp.status_code == 200
    enrolled = [c for c in resp.json() if c["enrollment_status"] == "enrolled"]
    assert [c["course_id"] for c in enrolled] == [PUBLIC_COURSE_ID]
    assert enrolled[0]["progress"] == 0
    assert enrolled[0]["is_public"] is True


def test_admin_status_unknown_student_returns_404(client: TestClient, admin_token: str) -> None:
    resp = client.get("/v1/admin/students/404/enrollments", headers=bearer(admin_token))
    assert resp.status_code == 404
    assert resp.json()["error"] == "student_not_found"


def test_student_cannot_read_admin_status_view(client: TestClient, student_token: str) -> None:
    resp = client.get(f"/v1/admin/students/{STUDENT_ID}/enrollments", headers=bearer(student_token))
    assert resp.status_code == 403
