from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

SOURCES = ("admin", "payment", "request-approval", "self")


@dataclass(frozen=True, slots=True)
class ProgressRecord:
    """Row in the legacy `student_progress` ledger.

    Always considered active; total_progress mirrors the canonical
    EnrollmentRecord.progress for the same pair.
    """

    student_id: int
    course_id: int
    total_progress: int = 0
    completed_chapters: str = "[]"
    last_accessed: datetime | None = None
    id: int | None = None  # assigned by the store

    @property
    def pair(self) -> tuple[int, int]:
        return (self.student_id, self.course_id)


@dataclass(frozen=True, slots=True)
class EnrollmentRecord:
    """Row in the canonical `enrollments` ledger."""

    user_id: int
    course_id: int
    status: str = "active"  # active|inactive|completed
    progress: int = 0
    source: str = "admin"  # admin|payment|request-approval|self
    enrolled_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    id: int | None = None

    @property
    def pair(self) -> tuple[int, int]:
        return (self.user_id, self.course_id)

    @property
    def is_active(self) -> bool:
        # A completed course still counts as enrolled
        return self.status != "inactive"
