from __future__ import annotations

from fastapi.testclient import TestClient

from tests.conftest import bearer

# ---- 404: undefined routes ----


def test_undefined_route_returns_404(client: TestClient) -> None:
    resp = client.get("/nonexistent")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Not Found"}


def test_old_unversioned_path_returns_404(client: TestClient) -> None:
    resp = client.get("/admin/enrollments")
    assert resp.status_code == 404


# ---- 405: wrong HTTP method on existing routes ----


def test_put_health_returns_405(client: TestClient) -> None:
    resp = client.put("/health", json={"status": "bad"})
    assert resp.status_code == 405


def test_get_webhook_returns_405(client: TestClient) -> None:
    resp = client.get("/v1/payments/webhook")
    assert resp.status_code == 405


def test_put_enrollment_returns_405(client: TestClient, admin_token: str) -> None:
    resp = client.put("/v1/admin/enrollments/11/5", headers=bearer(admin_token))
    assert resp.status_code == 405


# ---- 422: path and body validation ----


def test_non_integer_path_param_returns_422(client: TestClient, admin_token: str) -> None:
    resp = client.get("/v1/admin/enrollments/abc/5", headers=bearer(admin_token))
    assert resp.status_code == 422


def test_enroll_rejects_unknown_source(client: TestClient, admin_token: str) -> None:
    resp = client.post(
        "/v1/admin/enrollments",
        json={"student_id": 11, "course_id": 5, "source": "gift"},
        headers=bearer(admin_token),
    )
    assert resp.status_code == 422
