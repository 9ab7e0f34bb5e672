from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.course import Course
from app.models.user import User
from app.repos.fact_store import fact_store
from app.repos.ledger_repo import InMemoryFactStore
from app.services import token_service
from app.services.cache import cache_service
from app.services.enrollment_lock import enrollment_lock
from app.services.idempotency import idempotency_store
from app.services.task_queue import task_queue

# Ensure repo root is on sys.path so `import app` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

ADMIN_ID = 1
STUDENT_ID = 11
OTHER_STUDENT_ID = 12
INACTIVE_STUDENT_ID = 13
COURSE_ID = 5
OTHER_COURSE_ID = 6
DRAFT_COURSE_ID = 7
PUBLIC_COURSE_ID = 8

_INITIAL_USERS = [
    User(id=ADMIN_ID, email="admin@example.com", name="Ada", role="admin"),
    User(id=STUDENT_ID, email="sam@example.com", name="Sam"),
    User(id=OTHER_STUDENT_ID, email="kim@example.com", name="Kim"),
    User(id=INACTIVE_STUDENT_ID, email="gone@example.com", is_active=False),
]
_INITIAL_COURSES = [
    Course(id=COURSE_ID, title="Pharmacology", status="published"),
    Course(id=OTHER_COURSE_ID, title="Anatomy", status="published"),
    Course(id=DRAFT_COURSE_ID, title="Toxicology", status="draft"),
    Course(id=PUBLIC_COURSE_ID, title="First Aid", status="active", is_public=True),
]


@pytest.fixture(autouse=True)
def reset_fact_store() -> None:
    """Fresh ledgers plus the seeded users and courses for every test."""
    assert isinstance(fact_store, InMemoryFactStore), "tests need DATABASE_URL unset"
    fact_store.clear()
    for user in _INITIAL_USERS:
        fact_store.add_user(user)
    for course in _INITIAL_COURSES:
        fact_store.add_course(course)


@pytest.fixture(autouse=True)
def reset_locks() -> None:
    if hasattr(enrollment_lock, "_entries"):
        enrollment_lock._entries.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_idempotency_store() -> None:
    if hasattr(idempotency_store, "_records"):
        idempotency_store._records.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    """Clear cache between tests."""
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_task_queue() -> None:
    """Clear task queues between tests."""
    if hasattr(task_queue, "_queues"):
        task_queue._queues.clear()  # type: ignore[union-attr]


@pytest.fixture
def store() -> InMemoryFactStore:
    return fact_store  # type: ignore[return-value]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(sub: str = str(STUDENT_ID), roles: list[str] | None = None) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=sub, roles=roles)


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def student_token() -> str:
    return mint_token(sub=str(STUDENT_ID), roles=["student"])


@pytest.fixture
def admin_token() -> str:
    return mint_token(sub=str(ADMIN_ID), roles=["admin"])
