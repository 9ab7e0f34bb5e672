from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import UTC, datetime

from prometheus_client import REGISTRY

from app.models.access_request import AccessRequest
from app.models.enrollment import EnrollmentRecord, ProgressRecord
from app.repos.ledger_repo import InMemoryFactStore
from app.services import reconciliation
from tests.conftest import COURSE_ID, OTHER_COURSE_ID, OTHER_STUDENT_ID, STUDENT_ID


def _progress(store: InMemoryFactStore, student_id: int, course_id: int, value: int = 0) -> None:
    store._progress[(student_id, course_id)] = ProgressRecord(
        student_id=student_id, course_id=course_id, total_progress=value, id=store.next_id()
    )


def _enrollment(
    store: InMemoryFactStore,
    student_id: int,
    course_id: int,
    value: int = 0,
    status: str = "active",
) -> None:
    store._enrollments[(student_id, course_id)] = EnrollmentRecord(
        user_id=student_id,
        course_id=course_id,
        progress=value,
        status=status,
        id=store.next_id(),
    )


def _request(store: InMemoryFactStore, student_id: int, course_id: int, **fields) -> int:
    request_id = store.next_id()
    store._requests[request_id] = AccessRequest(
        student_id=student_id, course_id=course_id, id=request_id, **fields
    )
    return request_id


def _types(report: reconciliation.ReconciliationReport) -> list[str]:
    return sorted(f.type for f in report.findings)


def test_clean_ledgers_are_healthy(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID, 10)
    _enrollment(store, STUDENT_ID, COURSE_ID, 10)
    report = asyncio.run(reconciliation.scan(store))
    assert report.healthy is True
    assert report.stats["active_enrollments"] == 1
    assert report.to_dict()["counts"]["progress_only"] == 0


def test_detects_existence_drift(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID, 20)
    _enrollment(store, OTHER_STUDENT_ID, COURSE_ID, 30)
    report = asyncio.run(reconciliation.scan(store))
    assert _types(report) == ["enrollment_only", "progress_only"]
    assert all(f.repairable for f in report.findings)


def test_progress_with_inactive_enrollment_is_not_repairable(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID)
    _enrollment(store, STUDENT_ID, COURSE_ID, status="inactive")
    report = asyncio.run(reconciliation.scan(store))
    [finding] = report.findings
    assert finding.type == "progress_only"
    assert finding.repairable is False


def test_inactive_enrollment_alone_is_not_drift(store: InMemoryFactStore) -> None:
    _enrollment(store, STUDENT_ID, COURSE_ID, status="inactive")
    assert asyncio.run(reconciliation.scan(store)).healthy is True


def test_progress_mismatch_respects_tolerance(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID, 50)
    _enrollment(store, STUDENT_ID, COURSE_ID, 51)
    assert asyncio.run(reconciliation.scan(store, tolerance=1)).healthy is True

    report = asyncio.run(reconciliation.scan(store, tolerance=0))
    assert _types(report) == ["progress_mismatch"]
    assert report.findings[0].severity == "low"


def test_orphans_are_reported_not_repaired(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID)
    _enrollment(store, STUDENT_ID, COURSE_ID)
    store.remove_course(COURSE_ID)

    report, summary = asyncio.run(reconciliation.scan_and_repair(store))
    assert _types(report) == ["orphaned_enrollment", "orphaned_progress"]
    assert all(f.severity == "high" and not f.repairable for f in report.findings)
    assert summary.attempted == 0
    # Nothing deleted
    assert (STUDENT_ID, COURSE_ID) in store._progress
    assert (STUDENT_ID, COURSE_ID) in store._enrollments


def test_request_findings(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID)
    _enrollment(store, STUDENT_ID, COURSE_ID)
    _request(store, STUDENT_ID, COURSE_ID)  # stale: pair already enrolled
    _request(store, OTHER_STUDENT_ID, COURSE_ID, reviewed_at=datetime.now(UTC))
    _request(
        store,
        OTHER_STUDENT_ID,
        OTHER_COURSE_ID,
        status="approved",
        reviewed_at=datetime.now(UTC),
    )

    report = asyncio.run(reconciliation.scan(store))
    assert _types(report) == [
        "approved_without_enrollment",
        "reviewed_pending_request",
        "stale_pending_request",
    ]
    assert report.stats["pending_requests"] == 1


def test_repair_fixes_everything_repairable(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID, 40)  # progress_only
    _enrollment(store, STUDENT_ID, OTHER_COURSE_ID, 25)  # enrollment_only
    _progress(store, OTHER_STUDENT_ID, COURSE_ID, 10)
    _enrollment(store, OTHER_STUDENT_ID, COURSE_ID, 90)  # mismatch
    approved = _request(
        store,
        OTHER_STUDENT_ID,
        OTHER_COURSE_ID,
        status="approved",
        reviewed_at=datetime.now(UTC),
    )

    report, summary = asyncio.run(reconciliation.scan_and_repair(store))
    assert len(report.findings) == 4
    assert summary.attempted == 4
    assert summary.repaired == 4
    assert summary.errors == []

    assert store._enrollments[(STUDENT_ID, COURSE_ID)].progress == 40
    assert store._progress[(STUDENT_ID, OTHER_COURSE_ID)].total_progress == 25
    assert store._progress[(OTHER_STUDENT_ID, COURSE_ID)].total_progress == 90
    assert (OTHER_STUDENT_ID, OTHER_COURSE_ID) in store._enrollments
    assert approved not in store._requests

    assert asyncio.run(reconciliation.scan(store)).healthy is True


def test_repair_purges_request_findings(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID)
    _enrollment(store, STUDENT_ID, COURSE_ID)
    _request(store, STUDENT_ID, COURSE_ID)
    _request(store, OTHER_STUDENT_ID, COURSE_ID, reviewed_at=datetime.now(UTC))

    _, summary = asyncio.run(reconciliation.scan_and_repair(store))
    assert summary.repaired == 2
    assert store._requests == {}


def test_repair_skips_findings_that_no_longer_apply(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID, 40)
    report = asyncio.run(reconciliation.scan(store))
    # Fixed by someone else between scan and repair
    _enrollment(store, STUDENT_ID, COURSE_ID, 40)

    summary = asyncio.run(reconciliation.repair(store, report))
    assert summary.attempted == 1
    assert summary.skipped == 1
    assert summary.repaired == 0


def test_repair_collects_errors(store: InMemoryFactStore) -> None:
    approved = _request(
        store, STUDENT_ID, COURSE_ID, status="approved", reviewed_at=datetime.now(UTC)
    )
    report = asyncio.run(reconciliation.scan(store))
    # The student is deactivated before the repair runs
    store._users[STUDENT_ID] = replace(store._users[STUDENT_ID], is_active=False)

    summary = asyncio.run(reconciliation.repair(store, report))
    assert summary.repaired == 0
    [error] = summary.errors
    assert error["type"] == "approved_without_enrollment"
    assert error["error"] == "student_not_found"
    assert error["request_id"] == approved
    assert approved in store._requests


def test_scan_sets_findings_gauge(store: InMemoryFactStore) -> None:
    _progress(store, STUDENT_ID, COURSE_ID)
    asyncio.run(reconciliation.scan(store))
    value = REGISTRY.get_sample_value("reconciliation_findings", {"type": "progress_only"})
    assert value == 1.0
