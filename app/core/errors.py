"""Error taxonomy for the enrollment core.

Every failure a caller can see is an EnrollmentError subclass carrying:

  code       machine-readable tag ("course_not_found", "lock_busy", ...)
  retryable  True when the same call may succeed later unchanged

Callers branch on `retryable`, never on message text:

  NotFoundError        terminal  (404)  student/course/request absent
  ConflictError        terminal  (409)  already enrolled, duplicate request,
                                        course closed or needs approval
  LockBusyError        retryable (503)  pair lock not acquired in time
  DatabaseError        either           transient vs constraint/schema
  InconsistentStateError  soft          write committed, ledgers disagree

The enrollment operations raise these and never swallow a database
error; the access-request approval path is the one caller that catches
an enrollment failure on purpose (see app/services/access_requests.py).
"""

from __future__ import annotations


class EnrollmentError(Exception):
    code = "enrollment_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# --- NotFound (terminal) ---


class NotFoundError(EnrollmentError):
    code = "not_found"


class StudentNotFoundError(NotFoundError):
    code = "student_not_found"

    def __init__(self, student_id: int) -> None:
        super().__init__(f"Student {student_id} does not exist or is not active")
        self.student_id = student_id


class CourseNotFoundError(NotFoundError):
    code = "course_not_found"

    def __init__(self, course_id: int) -> None:
        super().__init__(f"Course {course_id} does not exist")
        self.course_id = course_id


class RequestNotFoundError(NotFoundError):
    code = "request_not_found"

    def __init__(self, request_id: int) -> None:
        super().__init__(f"Access request {request_id} does not exist")
        self.request_id = request_id


class NotEnrolledError(NotFoundError):
    code = "not_enrolled"

    def __init__(self, student_id: int, course_id: int) -> None:
        super().__init__(f"Student {student_id} is not enrolled in course {course_id}")
        self.student_id = student_id
        self.course_id = course_id


# --- Conflict (terminal) ---


class ConflictError(EnrollmentError):
    code = "conflict"


class AlreadyEnrolledError(ConflictError):
    code = "already_enrolled"

    def __init__(self, student_id: int, course_id: int) -> None:
        super().__init__(
            f"Student {student_id} is already enrolled in course {course_id}"
        )
        self.student_id = student_id
        self.course_id = course_id


class DuplicatePendingRequestError(ConflictError):
    code = "duplicate_pending_request"

    def __init__(self, student_id: int, course_id: int) -> None:
        super().__init__(
            f"Pending request already exists for student {student_id} "
            f"and course {course_id}"
        )


class RequestAlreadyReviewedError(ConflictError):
    code = "request_already_reviewed"

    def __init__(self, request_id: int, status: str) -> None:
        super().__init__(f"Request {request_id} is not pending (status: {status})")


class CourseUnavailableError(ConflictError):
    code = "course_unavailable"

    def __init__(self, course_id: int, status: str) -> None:
        super().__init__(f"Course {course_id} is not open for enrollment (status: {status})")
        self.course_id = course_id


class ApprovalRequiredError(ConflictError):
    """Self-enrollment into a course that is not public; file an access request instead."""

    code = "requires_approval"

    def __init__(self, course_id: int) -> None:
        super().__init__(f"Course {course_id} requires admin approval")
        self.course_id = course_id


# --- Retryable / infrastructure ---


class LockBusyError(EnrollmentError):
    code = "lock_busy"
    retryable = True

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"Could not acquire lock {key} within {timeout:.1f}s")
        self.key = key
        self.timeout = timeout


class DatabaseError(EnrollmentError):
    """Wraps a driver/ORM failure; `retryable` comes from SQLSTATE classification."""

    code = "database_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        category: str = "unknown_error",
        sqlstate: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.category = category
        self.sqlstate = sqlstate


class InconsistentStateError(EnrollmentError):
    """Post-write verification found the two ledgers still disagree.

    The primary write committed; reconciliation has to finish the job.
    """

    code = "inconsistent_state"

    def __init__(
        self, student_id: int, course_id: int, *, in_progress: bool, in_enrollments: bool
    ) -> None:
        super().__init__(
            f"Enrollment verification failed for student {student_id}, "
            f"course {course_id} (progress={in_progress}, enrollments={in_enrollments})"
        )
        self.student_id = student_id
        self.course_id = course_id
        self.in_progress = in_progress
        self.in_enrollments = in_enrollments
