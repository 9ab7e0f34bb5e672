"""Enrollment operations: the only code that writes the two ledgers.

Every primitive takes an already-open LedgerTx and never opens its own
transaction, so callers compose them (enroll_and_verify and
verify_committed, which need a fresh read after commit, are the helpers
that take the store):

  admin API      lock → enroll_and_verify
  self-enroll    lock → enroll_and_verify(source="self", expect_new=True)
  webhook        idempotency → lock → tx → mark payment + enroll_student
                 → verify_committed
  approval       lock → enroll_and_verify → delete request

MIRROR WRITES
--------------
`enrollments` is canonical; `student_progress` is the legacy mirror.
Every operation that touches one touches the other in the same
transaction.  When exactly one ledger has the pair, the missing row is
created from the existing one ("repair on write").

ERRORS
-------
Raised, never swallowed:
  CourseNotFoundError / StudentNotFoundError   terminal
  CourseUnavailableError                       course not published/active
  ApprovalRequiredError                        source="self", course not public
  AlreadyEnrolledError                         only with expect_new=True
  NotEnrolledError                             progress update, no rows
  DatabaseError                                from the fact store
  InconsistentStateError                       after commit, ledgers disagree
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime

from app.core.errors import (
    AlreadyEnrolledError,
    ApprovalRequiredError,
    CourseNotFoundError,
    CourseUnavailableError,
    InconsistentStateError,
    NotEnrolledError,
    StudentNotFoundError,
)
from app.core.metrics import ENROLLMENT_OPERATIONS
from app.models.course import Course
from app.models.enrollment import SOURCES, EnrollmentRecord, ProgressRecord
from app.models.user import User
from app.repos.ledger_repo import FactStore, LedgerTx

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EnrollmentOutcome:
    student_id: int
    course_id: int
    student_progress_created: bool = False
    enrollment_created: bool = False
    enrollment_reactivated: bool = False
    pending_requests_removed: int = 0

    @property
    def created_any(self) -> bool:
        return self.student_progress_created or self.enrollment_created

    @property
    def already_enrolled(self) -> bool:
        return not (self.created_any or self.enrollment_reactivated)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class UnenrollOutcome:
    student_id: int
    course_id: int
    progress_deleted: bool
    enrollment_deleted: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class EnrollmentVerification:
    in_progress: bool
    in_enrollments: bool

    @property
    def verified(self) -> bool:
        return self.in_progress and self.in_enrollments

    def to_dict(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "in_enrollments": self.in_enrollments,
            "verified": self.verified,
        }


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    enrollment_created: bool = False
    progress_created: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ProgressOutcome:
    student_id: int
    course_id: int
    progress: int
    completed: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def clamp_progress(percent: float) -> int:
    # Halves round up (2.5 -> 3), not to even
    return max(0, min(100, math.floor(percent + 0.5)))


async def _require_student_and_course(
    tx: LedgerTx, student_id: int, course_id: int
) -> tuple[User, Course]:
    course = await tx.get_course(course_id)
    if course is None:
        raise CourseNotFoundError(course_id)
    if not course.is_open:
        raise CourseUnavailableError(course_id, course.status)
    student = await tx.get_student(student_id)
    if student is None or not student.is_active:
        raise StudentNotFoundError(student_id)
    return student, course


async def enroll_student(
    tx: LedgerTx,
    user_id: int,
    course_id: int,
    *,
    admin_id: int | None = None,
    source: str = "admin",
    expect_new: bool = False,
) -> EnrollmentOutcome:
    """Create whatever part of the enrollment fact is missing.

    Re-reads both ledgers inside the transaction even though the caller
    holds the pair lock.  A pair already present in both ledgers is a
    no-op (all flags False) unless `expect_new`, which turns it into
    AlreadyEnrolledError.
    """
    if source not in SOURCES:
        raise ValueError(f"unknown enrollment source {source!r}")

    student, course = await _require_student_and_course(tx, user_id, course_id)
    if source == "self" and not student.is_student:
        raise StudentNotFoundError(user_id)
    if source == "self" and not course.is_public:
        ENROLLMENT_OPERATIONS.labels(operation="enroll", outcome="conflict").inc()
        raise ApprovalRequiredError(course_id)

    progress = await tx.get_progress_record(user_id, course_id)
    enrollment = await tx.get_enrollment_record(user_id, course_id)

    if expect_new and progress is not None and enrollment is not None and enrollment.is_active:
        ENROLLMENT_OPERATIONS.labels(operation="enroll", outcome="conflict").inc()
        raise AlreadyEnrolledError(user_id, course_id)

    now = _utcnow()
    progress_created = False
    enrollment_created = False
    reactivated = False

    if enrollment is None:
        # Repair-on-write: carry over progress the legacy ledger already has
        start = progress.total_progress if progress is not None else 0
        enrollment = await tx.upsert_enrollment(
            EnrollmentRecord(
                user_id=user_id,
                course_id=course_id,
                status="completed" if start >= 100 else "active",
                progress=start,
                source=source,
                enrolled_at=now,
                updated_at=now,
                completed_at=now if start >= 100 else None,
            )
        )
        enrollment_created = True
    elif not enrollment.is_active:
        enrollment = await tx.upsert_enrollment(
            replace(enrollment, status="active", updated_at=now)
        )
        reactivated = True

    if progress is None:
        await tx.upsert_progress(
            ProgressRecord(
                student_id=user_id,
                course_id=course_id,
                total_progress=enrollment.progress,
                last_accessed=now,
            )
        )
        progress_created = True

    removed = await tx.delete_pending_requests(user_id, course_id)

    outcome = EnrollmentOutcome(
        student_id=user_id,
        course_id=course_id,
        student_progress_created=progress_created,
        enrollment_created=enrollment_created,
        enrollment_reactivated=reactivated,
        pending_requests_removed=removed,
    )
    ENROLLMENT_OPERATIONS.labels(
        operation="enroll", outcome="noop" if outcome.already_enrolled else "created"
    ).inc()
    logger.info(
        "enroll student=%d course=%d source=%s admin=%s progress_created=%s "
        "enrollment_created=%s reactivated=%s requests_removed=%d",
        user_id,
        course_id,
        source,
        admin_id,
        progress_created,
        enrollment_created,
        reactivated,
        removed,
        extra={"student_id": user_id, "course_id": course_id, "operation": "enroll"},
    )
    return outcome


async def unenroll_student(
    tx: LedgerTx,
    user_id: int,
    course_id: int,
    *,
    admin_id: int | None = None,
    reason: str | None = None,
) -> UnenrollOutcome:
    """Hard-delete the pair from both ledgers.  Safe when rows are already gone.

    Quiz attempts and other history live elsewhere and are not touched.
    """
    progress_deleted, enrollment_deleted = await tx.delete_both(user_id, course_id)
    ENROLLMENT_OPERATIONS.labels(
        operation="unenroll",
        outcome="deleted" if (progress_deleted or enrollment_deleted) else "noop",
    ).inc()
    logger.info(
        "unenroll student=%d course=%d admin=%s reason=%r progress_deleted=%s "
        "enrollment_deleted=%s",
        user_id,
        course_id,
        admin_id,
        reason,
        progress_deleted,
        enrollment_deleted,
        extra={"student_id": user_id, "course_id": course_id, "operation": "unenroll"},
    )
    return UnenrollOutcome(
        student_id=user_id,
        course_id=course_id,
        progress_deleted=progress_deleted,
        enrollment_deleted=enrollment_deleted,
    )


async def verify_enrollment_exists(
    tx: LedgerTx, student_id: int, course_id: int
) -> EnrollmentVerification:
    progress = await tx.get_progress_record(student_id, course_id)
    enrollment = await tx.get_enrollment_record(student_id, course_id)
    return EnrollmentVerification(
        in_progress=progress is not None,
        in_enrollments=enrollment is not None and enrollment.is_active,
    )


async def sync_enrollment_state(
    tx: LedgerTx, student_id: int, course_id: int, *, source: str = "admin"
) -> SyncOutcome:
    """Existence-only repair: if exactly one ledger has the pair, create the other.

    Copies the progress value across.  Neither or both present: no-op.
    Value drift between two existing rows is align_progress's job.
    """
    progress = await tx.get_progress_record(student_id, course_id)
    enrollment = await tx.get_enrollment_record(student_id, course_id)

    if (progress is None) == (enrollment is None):
        ENROLLMENT_OPERATIONS.labels(operation="sync", outcome="noop").inc()
        return SyncOutcome()

    now = _utcnow()
    if enrollment is None:
        value = progress.total_progress  # type: ignore[union-attr]
        await tx.upsert_enrollment(
            EnrollmentRecord(
                user_id=student_id,
                course_id=course_id,
                status="completed" if value >= 100 else "active",
                progress=value,
                source=source,
                enrolled_at=now,
                updated_at=now,
                completed_at=now if value >= 100 else None,
            )
        )
        outcome = SyncOutcome(enrollment_created=True)
    else:
        await tx.upsert_progress(
            ProgressRecord(
                student_id=student_id,
                course_id=course_id,
                total_progress=enrollment.progress,
                last_accessed=now,
            )
        )
        outcome = SyncOutcome(progress_created=True)

    ENROLLMENT_OPERATIONS.labels(operation="sync", outcome="created").inc()
    logger.info(
        "sync student=%d course=%d enrollment_created=%s progress_created=%s",
        student_id,
        course_id,
        outcome.enrollment_created,
        outcome.progress_created,
        extra={"student_id": student_id, "course_id": course_id, "operation": "sync"},
    )
    return outcome


async def update_progress(
    tx: LedgerTx, student_id: int, course_id: int, percent: float
) -> ProgressOutcome:
    """Write enrollments.progress (canonical), then mirror into student_progress.

    Never creates an enrollment: a pair in neither ledger is
    NotEnrolledError.  A pair in only one ledger gets only that row
    updated; reconciliation creates the other.
    """
    value = clamp_progress(percent)
    progress = await tx.get_progress_record(student_id, course_id)
    enrollment = await tx.get_enrollment_record(student_id, course_id)
    if progress is None and enrollment is None:
        ENROLLMENT_OPERATIONS.labels(operation="progress", outcome="not_enrolled").inc()
        raise NotEnrolledError(student_id, course_id)

    now = _utcnow()
    completed = value >= 100
    if enrollment is not None:
        if completed:
            status = "completed"
            completed_at = enrollment.completed_at or now
        else:
            status = "active" if enrollment.status == "completed" else enrollment.status
            completed_at = None
        await tx.upsert_enrollment(
            replace(
                enrollment,
                progress=value,
                status=status,
                completed_at=completed_at,
                updated_at=now,
            )
        )
    if progress is not None:
        await tx.upsert_progress(replace(progress, total_progress=value, last_accessed=now))

    ENROLLMENT_OPERATIONS.labels(operation="progress", outcome="updated").inc()
    logger.debug(
        "progress student=%d course=%d value=%d completed=%s",
        student_id,
        course_id,
        value,
        completed,
        extra={"student_id": student_id, "course_id": course_id, "operation": "progress"},
    )
    return ProgressOutcome(
        student_id=student_id, course_id=course_id, progress=value, completed=completed
    )


async def align_progress(tx: LedgerTx, student_id: int, course_id: int) -> bool:
    """Copy the canonical enrollments.progress onto the mirror.  True if it changed."""
    progress = await tx.get_progress_record(student_id, course_id)
    enrollment = await tx.get_enrollment_record(student_id, course_id)
    if progress is None or enrollment is None:
        return False
    if progress.total_progress == enrollment.progress:
        return False
    await tx.upsert_progress(replace(progress, total_progress=enrollment.progress))
    logger.info(
        "align progress student=%d course=%d mirror=%d canonical=%d",
        student_id,
        course_id,
        progress.total_progress,
        enrollment.progress,
        extra={"student_id": student_id, "course_id": course_id, "operation": "align"},
    )
    return True


async def verify_committed(store: FactStore, user_id: int, course_id: int) -> None:
    """Re-read both ledgers in a fresh transaction; InconsistentStateError if they disagree.

    Called after the write committed, with the pair lock still held.
    """
    async with store.transaction() as tx:
        verification = await verify_enrollment_exists(tx, user_id, course_id)
    if not verification.verified:
        logger.error(
            "Enrollment verification failed student=%d course=%d in_progress=%s "
            "in_enrollments=%s",
            user_id,
            course_id,
            verification.in_progress,
            verification.in_enrollments,
            extra={"student_id": user_id, "course_id": course_id, "operation": "enroll"},
        )
        raise InconsistentStateError(
            user_id,
            course_id,
            in_progress=verification.in_progress,
            in_enrollments=verification.in_enrollments,
        )


async def enroll_and_verify(
    store: FactStore,
    user_id: int,
    course_id: int,
    *,
    admin_id: int | None = None,
    source: str = "admin",
    expect_new: bool = False,
) -> EnrollmentOutcome:
    """Commit enroll_student, then verify_committed.

    The caller holds the pair lock.  Verification reads what actually
    committed, so a failure here means the write landed but the ledgers
    still disagree: InconsistentStateError, and reconciliation takes over.
    """
    async with store.transaction() as tx:
        outcome = await enroll_student(
            tx, user_id, course_id, admin_id=admin_id, source=source, expect_new=expect_new
        )
    await verify_committed(store, user_id, course_id)
    return outcome


@dataclass(frozen=True, slots=True)
class CourseEnrollmentStatus:
    course_id: int
    title: str
    course_status: str
    is_public: bool
    enrollment_status: str  # enrolled|requested|available
    progress: int = 0
    last_accessed: datetime | None = None
    requested_at: datetime | None = None

    def to_dict(self) -> dict:
        return asdict(self)


async def get_student_enrollment_status(
    tx: LedgerTx, student_id: int
) -> list[CourseEnrollmentStatus]:
    """One entry per open course: enrolled, requested, or available.

    A row in either ledger counts as enrolled, so a half-written pair
    still shows up; progress comes from the canonical ledger when it has
    the pair.
    """
    student = await tx.get_student(student_id)
    if student is None or not student.is_active:
        raise StudentNotFoundError(student_id)

    records = await tx.list_student_records(student_id)
    mirror = {r.course_id: r for r in records.progress}
    canonical = {r.course_id: r for r in records.enrollments if r.is_active}
    requested = {r.course_id: r for r in records.requests if r.is_true_pending}

    statuses = []
    for course in await tx.list_open_courses():
        entry = CourseEnrollmentStatus(
            course_id=course.id,
            title=course.title,
            course_status=course.status,
            is_public=course.is_public,
            enrollment_status="available",
        )
        enrollment = canonical.get(course.id)
        progress = mirror.get(course.id)
        if enrollment is not None:
            entry = replace(
                entry,
                enrollment_status="enrolled",
                progress=enrollment.progress,
                last_accessed=progress.last_accessed if progress else enrollment.updated_at,
            )
        elif progress is not None:
            entry = replace(
                entry,
                enrollment_status="enrolled",
                progress=progress.total_progress,
                last_accessed=progress.last_accessed,
            )
        elif course.id in requested:
            entry = replace(
                entry,
                enrollment_status="requested",
                requested_at=requested[course.id].requested_at,
            )
        statuses.append(entry)
    return statuses
