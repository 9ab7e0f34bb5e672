"""Reconciliation: find and (additively) repair drift between the ledgers.

The enrollment operations keep the two ledgers in step on every write,
but rows written before they existed, manual SQL, and approvals whose
enrollment failed all leave drift behind.  scan() reads one consistent
snapshot and classifies every problem it finds:

  type                          severity  repairable  repair
  ----------------------------  --------  ----------  -------------------------
  orphaned_progress             high      no          (course/student deleted)
  orphaned_enrollment           high      no
  orphaned_request              medium    no
  progress_only                 medium    yes*        sync_enrollment_state
  enrollment_only               medium    yes         sync_enrollment_state
  progress_mismatch             low       yes         mirror canonical progress
  approved_without_enrollment   high      yes         complete_approved_request
  stale_pending_request         medium    yes         delete the request
  reviewed_pending_request      low       yes         delete the request

  * not when the enrollments row exists but is inactive: creating
    nothing fixes that, and reactivating is an enrollment decision.

Orphans are never repaired automatically: deleting a student's progress
because a course row vanished is exactly the data loss this service is
meant to prevent.  A human decides.

repair() takes the pair lock for every fix and runs each one in its own
transaction, so one bad pair never blocks the rest.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.core.config import SETTINGS
from app.core.errors import (
    EnrollmentError,
    RequestAlreadyReviewedError,
    RequestNotFoundError,
)
from app.core.metrics import RECONCILIATION_FINDINGS
from app.models.enrollment import EnrollmentRecord, ProgressRecord
from app.repos.ledger_repo import FactStore
from app.services import access_requests, enrollment_ops
from app.services.cache import invalidate_pair
from app.services.enrollment_lock import with_enrollment_lock

logger = logging.getLogger(__name__)

FINDING_TYPES: dict[str, tuple[str, bool]] = {
    "orphaned_progress": ("high", False),
    "orphaned_enrollment": ("high", False),
    "orphaned_request": ("medium", False),
    "progress_only": ("medium", True),
    "enrollment_only": ("medium", True),
    "progress_mismatch": ("low", True),
    "approved_without_enrollment": ("high", True),
    "stale_pending_request": ("medium", True),
    "reviewed_pending_request": ("low", True),
}


@dataclass(frozen=True, slots=True)
class Finding:
    type: str
    severity: str
    student_id: int
    course_id: int
    detail: str
    repairable: bool
    request_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "request_id": self.request_id,
            "detail": self.detail,
            "repairable": self.repairable,
        }


def _finding(
    type_: str,
    student_id: int,
    course_id: int,
    detail: str,
    *,
    request_id: int | None = None,
    repairable: bool | None = None,
) -> Finding:
    severity, default_repairable = FINDING_TYPES[type_]
    return Finding(
        type=type_,
        severity=severity,
        student_id=student_id,
        course_id=course_id,
        detail=detail,
        repairable=default_repairable if repairable is None else repairable,
        request_id=request_id,
    )


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    findings: tuple[Finding, ...]
    stats: dict[str, int]
    scanned_at: datetime

    @property
    def healthy(self) -> bool:
        return not self.findings

    def count_by_type(self) -> dict[str, int]:
        counts = Counter(f.type for f in self.findings)
        return {t: counts.get(t, 0) for t in FINDING_TYPES}

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "scanned_at": self.scanned_at.isoformat(),
            "stats": self.stats,
            "counts": self.count_by_type(),
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(slots=True)
class RepairSummary:
    attempted: int = 0
    repaired: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "repaired": self.repaired,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


async def scan(store: FactStore, tolerance: int | None = None) -> ReconciliationReport:
    """Read-only pass over both ledgers and the request ledger."""
    tol = SETTINGS.progress_tolerance if tolerance is None else tolerance
    async with store.transaction() as tx:
        snapshot = await tx.list_all()

    progress: dict[tuple[int, int], ProgressRecord] = {r.pair: r for r in snapshot.progress}
    enrollments: dict[tuple[int, int], EnrollmentRecord] = {
        r.pair: r for r in snapshot.enrollments
    }

    def orphan_reason(student_id: int, course_id: int) -> str | None:
        if course_id not in snapshot.course_ids:
            return f"course {course_id} no longer exists"
        if student_id not in snapshot.user_ids:
            return f"student {student_id} no longer exists"
        return None

    findings: list[Finding] = []
    orphaned: set[tuple[int, int]] = set()

    # 1. orphans
    for rec in snapshot.progress:
        reason = orphan_reason(*rec.pair)
        if reason:
            orphaned.add(rec.pair)
            findings.append(_finding("orphaned_progress", *rec.pair, reason))
    for rec in snapshot.enrollments:
        reason = orphan_reason(*rec.pair)
        if reason:
            orphaned.add(rec.pair)
            findings.append(_finding("orphaned_enrollment", *rec.pair, reason))
    orphaned_requests: set[int] = set()
    for req in snapshot.requests:
        reason = orphan_reason(*req.pair)
        if reason:
            orphaned_requests.add(req.id)  # type: ignore[arg-type]
            findings.append(
                _finding("orphaned_request", *req.pair, reason, request_id=req.id)
            )

    # 2. existence drift
    for pair in sorted(progress.keys() - orphaned):
        enrollment = enrollments.get(pair)
        if enrollment is None:
            findings.append(
                _finding("progress_only", *pair, "student_progress row without enrollments row")
            )
        elif not enrollment.is_active:
            findings.append(
                _finding(
                    "progress_only",
                    *pair,
                    "student_progress row but enrollments row is inactive",
                    repairable=False,
                )
            )
    for pair in sorted(enrollments.keys() - progress.keys() - orphaned):
        if enrollments[pair].is_active:
            findings.append(
                _finding("enrollment_only", *pair, "enrollments row without student_progress row")
            )

    # 3. value drift
    for pair in sorted((progress.keys() & enrollments.keys()) - orphaned):
        mirror = progress[pair].total_progress
        canonical = enrollments[pair].progress
        if abs(mirror - canonical) > tol:
            findings.append(
                _finding(
                    "progress_mismatch",
                    *pair,
                    f"student_progress={mirror} enrollments={canonical} tolerance={tol}",
                )
            )

    # 4. requests
    def is_enrolled(pair: tuple[int, int]) -> bool:
        enrollment = enrollments.get(pair)
        return pair in progress or (enrollment is not None and enrollment.is_active)

    def is_verified(pair: tuple[int, int]) -> bool:
        enrollment = enrollments.get(pair)
        return pair in progress and enrollment is not None and enrollment.is_active

    pending_count = 0
    for req in snapshot.requests:
        if req.id in orphaned_requests:
            continue
        if req.is_true_pending:
            pending_count += 1
            if is_enrolled(req.pair):
                findings.append(
                    _finding(
                        "stale_pending_request",
                        *req.pair,
                        "pending request for a pair that is already enrolled",
                        request_id=req.id,
                    )
                )
        elif req.status == "pending":
            findings.append(
                _finding(
                    "reviewed_pending_request",
                    *req.pair,
                    "pending request with reviewed_at set",
                    request_id=req.id,
                )
            )
        elif req.status == "approved" and not is_verified(req.pair):
            findings.append(
                _finding(
                    "approved_without_enrollment",
                    *req.pair,
                    "approved request with no verified enrollment",
                    request_id=req.id,
                )
            )

    stats = {
        "student_progress_rows": len(snapshot.progress),
        "enrollment_rows": len(snapshot.enrollments),
        "active_enrollments": sum(1 for e in snapshot.enrollments if e.is_active),
        "access_requests": len(snapshot.requests),
        "pending_requests": pending_count,
        "high": sum(1 for f in findings if f.severity == "high"),
        "medium": sum(1 for f in findings if f.severity == "medium"),
        "low": sum(1 for f in findings if f.severity == "low"),
    }
    report = ReconciliationReport(
        findings=tuple(findings), stats=stats, scanned_at=datetime.now(UTC)
    )

    for type_, count in report.count_by_type().items():
        RECONCILIATION_FINDINGS.labels(type=type_).set(count)
    if findings:
        logger.warning(
            "Reconciliation scan found %d issue(s) high=%d medium=%d low=%d",
            len(findings),
            stats["high"],
            stats["medium"],
            stats["low"],
        )
    else:
        logger.info("Reconciliation scan clean  pairs=%d", len(progress.keys() | enrollments.keys()))
    return report


class _ApprovalRetryFailed(EnrollmentError):
    def __init__(self, outcome: access_requests.ApprovalOutcome) -> None:
        super().__init__(outcome.message or "enrollment failed")
        self.code = outcome.error or EnrollmentError.code
        self.retryable = outcome.retryable


async def _repair_one(store: FactStore, finding: Finding) -> bool:
    """Apply one fix.  Returns False when the finding no longer applies."""
    pair = (finding.student_id, finding.course_id)

    if finding.type == "approved_without_enrollment":
        try:
            outcome = await access_requests.complete_approved_request(
                store, finding.request_id  # type: ignore[arg-type]
            )
        except (RequestNotFoundError, RequestAlreadyReviewedError):
            return False
        if not outcome.enrolled:
            raise _ApprovalRetryFailed(outcome)
        return True

    async with with_enrollment_lock(*pair):
        async with store.transaction() as tx:
            if finding.type in ("progress_only", "enrollment_only"):
                sync = await enrollment_ops.sync_enrollment_state(tx, *pair)
                return sync.enrollment_created or sync.progress_created

            if finding.type == "progress_mismatch":
                return await enrollment_ops.align_progress(tx, *pair)

            # Request purges: re-check under the lock, the scan may be stale
            request = await tx.get_request(finding.request_id)  # type: ignore[arg-type]
            if request is None:
                return False
            if finding.type == "reviewed_pending_request":
                still_bad = request.status == "pending" and request.reviewed_at is not None
            else:
                verification = await enrollment_ops.verify_enrollment_exists(tx, *pair)
                still_bad = request.is_true_pending and (
                    verification.in_progress or verification.in_enrollments
                )
            if not still_bad:
                return False
            await tx.delete_request(request.id)  # type: ignore[arg-type]
            return True


async def repair(store: FactStore, report: ReconciliationReport) -> RepairSummary:
    """Fix every repairable finding.  Errors are collected, never raised."""
    summary = RepairSummary()
    for finding in report.findings:
        if not finding.repairable:
            continue
        summary.attempted += 1
        try:
            changed = await _repair_one(store, finding)
        except EnrollmentError as exc:
            logger.warning(
                "Repair failed type=%s student=%d course=%d: %s",
                finding.type,
                finding.student_id,
                finding.course_id,
                exc.message,
                extra={
                    "student_id": finding.student_id,
                    "course_id": finding.course_id,
                    "operation": "repair",
                },
            )
            summary.errors.append(
                {
                    "type": finding.type,
                    "student_id": finding.student_id,
                    "course_id": finding.course_id,
                    "request_id": finding.request_id,
                    "error": exc.code,
                    "detail": exc.message,
                    "retryable": exc.retryable,
                }
            )
            continue
        if changed:
            summary.repaired += 1
            await invalidate_pair(finding.student_id, finding.course_id)
        else:
            summary.skipped += 1

    logger.info(
        "Reconciliation repair attempted=%d repaired=%d skipped=%d errors=%d",
        summary.attempted,
        summary.repaired,
        summary.skipped,
        len(summary.errors),
    )
    return summary


async def scan_and_repair(
    store: FactStore, tolerance: int | None = None
) -> tuple[ReconciliationReport, RepairSummary]:
    report = await scan(store, tolerance)
    summary = await repair(store, report)
    return report, summary
