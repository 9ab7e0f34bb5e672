"""Access request lifecycle.

    pending ──approve──▶ approved ──enrollment verified──▶ (deleted)
       │                    │
       │                    └─enrollment failed──▶ stays approved
       │                                           (repair retries)
       └──reject──▶ rejected ──▶ (deleted, same transaction)

Processed requests are not kept: the activity log records that an
approval happened, the request row itself goes away once consumed.

WRITE-BOUNDARY INVARIANT
-------------------------
reviewed_at is set in the same statement that moves a request out of
"pending", so `status = 'pending' AND reviewed_at IS NULL` is the one
definition of "pending" every read uses.  The pending list never deletes
anything; leftover processed rows are removed by
sweep_processed_requests (maintenance worker) or reconciliation repair.

WHY APPROVAL COMMITS TWICE
---------------------------
The approval decision is committed on its own before enrollment starts.
If enrollment then fails, the request stays "approved" with reviewed_at
set and the failure is returned, not raised.  Losing the approval would
make the student ask again; an approved-but-unenrolled request is
something reconciliation can finish later (complete_approved_request).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from app.core.errors import (
    AlreadyEnrolledError,
    CourseNotFoundError,
    CourseUnavailableError,
    DuplicatePendingRequestError,
    EnrollmentError,
    RequestAlreadyReviewedError,
    RequestNotFoundError,
    StudentNotFoundError,
)
from app.models.access_request import AccessRequest
from app.repos.ledger_repo import FactStore
from app.services import enrollment_ops
from app.services.cache import invalidate_pair
from app.services.enrollment_lock import with_enrollment_lock, with_request_lock
from app.services.enrollment_ops import EnrollmentOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ApprovalOutcome:
    request_id: int
    student_id: int
    course_id: int
    enrolled: bool
    enrollment: EnrollmentOutcome | None = None
    error: str | None = None  # EnrollmentError.code when enrolled is False
    message: str | None = None
    retryable: bool = False

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "enrolled": self.enrolled,
            "enrollment": self.enrollment.to_dict() if self.enrollment else None,
            "error": self.error,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass(frozen=True, slots=True)
class SweepSummary:
    rejected_deleted: int = 0
    stale_pending_deleted: int = 0
    approved_deleted: int = 0
    approved_left_for_repair: int = 0

    @property
    def total_deleted(self) -> int:
        return self.rejected_deleted + self.stale_pending_deleted + self.approved_deleted


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def create_request(
    store: FactStore, student_id: int, course_id: int, reason: str | None = None
) -> AccessRequest:
    """Open a pending request for a gated course.

    Pair lock first, then the request lock, always in that order.  An
    enrollment in flight for the pair either commits before this reads
    (AlreadyEnrolledError) or starts after the request exists and removes it.
    """
    async with with_enrollment_lock(student_id, course_id), with_request_lock(
        student_id, course_id
    ):
        async with store.transaction() as tx:
            student = await tx.get_student(student_id)
            if student is None or not student.is_active or not student.is_student:
                raise StudentNotFoundError(student_id)
            course = await tx.get_course(course_id)
            if course is None:
                raise CourseNotFoundError(course_id)
            if not course.is_open:
                raise CourseUnavailableError(course_id, course.status)

            verification = await enrollment_ops.verify_enrollment_exists(
                tx, student_id, course_id
            )
            if verification.in_progress or verification.in_enrollments:
                raise AlreadyEnrolledError(student_id, course_id)
            if await tx.find_pending_request(student_id, course_id) is not None:
                raise DuplicatePendingRequestError(student_id, course_id)

            request = await tx.add_request(
                AccessRequest(
                    student_id=student_id,
                    course_id=course_id,
                    reason=reason,
                    requested_at=_utcnow(),
                )
            )
    logger.info(
        "Access request created id=%s student=%d course=%d",
        request.id,
        student_id,
        course_id,
        extra={"student_id": student_id, "course_id": course_id, "operation": "request"},
    )
    return request


async def _load(store: FactStore, request_id: int) -> AccessRequest:
    async with store.transaction() as tx:
        request = await tx.get_request(request_id)
    if request is None:
        raise RequestNotFoundError(request_id)
    return request


async def _enroll_and_consume(
    store: FactStore, request: AccessRequest, admin_id: int | None
) -> ApprovalOutcome:
    """Enroll for an approved request and delete it.  Caller holds the pair lock."""
    if request.id is None:
        raise ValueError("access request has not been stored")
    try:
        outcome = await enrollment_ops.enroll_and_verify(
            store,
            request.student_id,
            request.course_id,
            admin_id=admin_id,
            source="request-approval",
        )
    except EnrollmentError as exc:
        logger.error(
            "Approved request %d left for repair: enrollment failed code=%s retryable=%s",
            request.id,
            exc.code,
            exc.retryable,
            extra={
                "student_id": request.student_id,
                "course_id": request.course_id,
                "operation": "approve",
            },
        )
        return ApprovalOutcome(
            request_id=request.id,
            student_id=request.student_id,
            course_id=request.course_id,
            enrolled=False,
            error=exc.code,
            message=exc.message,
            retryable=exc.retryable,
        )

    async with store.transaction() as tx:
        await tx.delete_request(request.id)
    await invalidate_pair(request.student_id, request.course_id)

    return ApprovalOutcome(
        request_id=request.id,
        student_id=request.student_id,
        course_id=request.course_id,
        enrolled=True,
        enrollment=outcome,
    )


async def approve_request(
    store: FactStore, request_id: int, admin_id: int | None
) -> ApprovalOutcome:
    """Approve, then enroll.  Re-approving an approved request retries the enrollment."""
    pair = (await _load(store, request_id)).pair

    async with with_enrollment_lock(*pair):
        async with store.transaction() as tx:
            request = await tx.get_request(request_id)
            if request is None:
                raise RequestNotFoundError(request_id)
            if request.status == "rejected" or (
                request.status == "pending" and request.reviewed_at is not None
            ):
                raise RequestAlreadyReviewedError(request_id, request.status)
            if request.status == "pending":
                request = await tx.mark_request_reviewed(
                    request_id,
                    status="approved",
                    reviewed_by=admin_id,
                    reviewed_at=_utcnow(),
                )
                if request is None:
                    raise RequestNotFoundError(request_id)

        logger.info(
            "Access request %d approved by admin=%s",
            request_id,
            admin_id,
            extra={"student_id": pair[0], "course_id": pair[1], "operation": "approve"},
        )
        return await _enroll_and_consume(store, request, admin_id)


async def complete_approved_request(
    store: FactStore, request_id: int, admin_id: int | None = None
) -> ApprovalOutcome:
    """Retry path for an approved request whose enrollment never landed."""
    pair = (await _load(store, request_id)).pair

    async with with_enrollment_lock(*pair):
        request = await _load(store, request_id)
        if request.status != "approved":
            raise RequestAlreadyReviewedError(request_id, request.status)
        return await _enroll_and_consume(store, request, admin_id)


async def reject_request(
    store: FactStore, request_id: int, admin_id: int | None
) -> AccessRequest:
    """Reject and consume in one transaction.  Returns the rejected row as it was."""
    pair = (await _load(store, request_id)).pair

    async with with_enrollment_lock(*pair):
        async with store.transaction() as tx:
            request = await tx.get_request(request_id)
            if request is None:
                raise RequestNotFoundError(request_id)
            if not request.is_true_pending:
                raise RequestAlreadyReviewedError(request_id, request.status)
            rejected = await tx.mark_request_reviewed(
                request_id,
                status="rejected",
                reviewed_by=admin_id,
                reviewed_at=_utcnow(),
            )
            if rejected is None:
                raise RequestNotFoundError(request_id)
            await tx.delete_request(request_id)

    logger.info(
        "Access request %d rejected by admin=%s",
        request_id,
        admin_id,
        extra={"student_id": pair[0], "course_id": pair[1], "operation": "reject"},
    )
    return rejected


async def list_pending_requests(store: FactStore) -> list[AccessRequest]:
    async with store.transaction() as tx:
        return await tx.list_pending_requests()


async def sweep_processed_requests(store: FactStore) -> SweepSummary:
    """Delete consumed requests the write paths left behind.

    Approved rows go only once their enrollment is verified; the rest
    stay for reconciliation (approved_without_enrollment).
    """
    rejected = stale = approved = left = 0
    async with store.transaction() as tx:
        for request in await tx.list_processed_requests():
            if request.status == "approved":
                verification = await enrollment_ops.verify_enrollment_exists(
                    tx, request.student_id, request.course_id
                )
                if not verification.verified:
                    left += 1
                    continue
                approved += 1
            elif request.status == "rejected":
                rejected += 1
            else:
                stale += 1
            await tx.delete_request(request.id)  # type: ignore[arg-type]

    summary = SweepSummary(
        rejected_deleted=rejected,
        stale_pending_deleted=stale,
        approved_deleted=approved,
        approved_left_for_repair=left,
    )
    if summary.total_deleted or left:
        logger.info(
            "Swept processed requests rejected=%d stale_pending=%d approved=%d left=%d",
            rejected,
            stale,
            approved,
            left,
        )
    return summary
