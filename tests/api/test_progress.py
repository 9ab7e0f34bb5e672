"""Progress sync and the read-through cache in front of it.

1. First GET is a cache miss (populates the cache from the ledgers)
2. Second GET is a cache hit (no transaction opened)
3. Any write for the pair invalidates the cache so the next GET is fresh
"""

from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from redis.exceptions import RedisError

from app.repos.ledger_repo import InMemoryFactStore
from app.services.cache import cache_service, progress_cache_key
from tests.conftest import COURSE_ID, OTHER_COURSE_ID, STUDENT_ID, bearer


def _cache_ops(result: str) -> float:
    value = REGISTRY.get_sample_value("cache_operations_total", {"operation": result})
    return value if value is not None else 0.0


@pytest.fixture
def enrolled(client: TestClient, admin_token: str) -> None:
    client.post(
        "/v1/admin/enrollments",
        json={"student_id": STUDENT_ID, "course_id": COURSE_ID},
        headers=bearer(admin_token),
    )


def test_sync_progress_updates_both_ledgers(
    client: TestClient, student_token: str, store: InMemoryFactStore, enrolled: None
) -> None:
    resp = client.post(
        f"/v1/progress/{COURSE_ID}", json={"progress": 64.7}, headers=bearer(student_token)
    )
    assert resp.status_code == 200
    assert resp.json()["progress"] == 65
    assert resp.json()["completed"] is False
    assert store._enrollments[(STUDENT_ID, COURSE_ID)].progress == 65
    assert store._progress[(STUDENT_ID, COURSE_ID)].total_progress == 65


def test_sync_to_100_completes(client: TestClient, student_token: str, enrolled: None) -> None:
    resp = client.post(
        f"/v1/progress/{COURSE_ID}", json={"progress": 100}, headers=bearer(student_token)
    )
    assert resp.json()["completed"] is True
    assert resp.json()["status"] == "completed"
    assert resp.json()["completed_at"] is not None


def test_sync_rejects_out_of_range(client: TestClient, student_token: str, enrolled: None) -> None:
    resp = client.post(
        f"/v1/progress/{COURSE_ID}", json={"progress": 101}, headers=bearer(student_token)
    )
    assert resp.status_code == 422


def test_not_enrolled_returns_404(client: TestClient, student_token: str) -> None:
    post = client.post(
        f"/v1/progress/{OTHER_COURSE_ID}", json={"progress": 10}, headers=bearer(student_token)
    )
    get = client.get(f"/v1/progress/{OTHER_COURSE_ID}", headers=bearer(student_token))
    assert post.status_code == 404
    assert get.status_code == 404
    assert get.json()["error"] == "not_enrolled"


def test_cache_miss_then_hit(client: TestClient, student_token: str, enrolled: None) -> None:
    misses, hits = _cache_ops("miss"), _cache_ops("hit")

    first = client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    second = client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))

    assert first.status_code == 200
    assert first.json() == second.json()
    assert _cache_ops("miss") - misses == 1
    assert _cache_ops("hit") - hits == 1
    assert progress_cache_key(STUDENT_ID, COURSE_ID) in cache_service._store  # type: ignore[union-attr]


def test_cache_serves_stale_value_until_invalidated(
    client: TestClient, student_token: str, store: InMemoryFactStore, enrolled: None
) -> None:
    client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    # Written behind the service's back: the cache does not know
    pair = (STUDENT_ID, COURSE_ID)
    store._enrollments[pair] = replace(store._enrollments[pair], progress=90)

    cached = client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    assert cached.json()["progress"] == 0


def test_progress_write_invalidates_cache(
    client: TestClient, student_token: str, enrolled: None
) -> None:
    client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    client.post(f"/v1/progress/{COURSE_ID}", json={"progress": 30}, headers=bearer(student_token))

    fresh = client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    assert fresh.json()["progress"] == 30


def test_unenroll_invalidates_cache(
    client: TestClient, student_token: str, admin_token: str, enrolled: None
) -> None:
    client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    client.delete(f"/v1/admin/enrollments/{STUDENT_ID}/{COURSE_ID}", headers=bearer(admin_token))

    resp = client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))
    assert resp.status_code == 404


def test_cache_outage_falls_through_to_ledgers(
    client: TestClient, student_token: str, monkeypatch: pytest.MonkeyPatch, enrolled: None
) -> None:
    async def unavailable(*args, **kwargs):
        raise RedisError("connection refused")

    monkeypatch.setattr(cache_service, "get", unavailable)
    monkeypatch.setattr(cache_service, "set", unavailable)
    errors = _cache_ops("error")

    resp = client.get(f"/v1/progress/{COURSE_ID}", headers=bearer(student_token))

    assert resp.status_code == 200
    assert resp.json()["progress"] == 0
    assert _cache_ops("error") - errors == 1
