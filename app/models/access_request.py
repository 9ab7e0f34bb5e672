from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class AccessRequest:
    """A student's request to join a gated course.

    reviewed_at is None iff status == "pending".  A pending row with a
    review timestamp was already handled and only waits to be swept.
    """

    student_id: int
    course_id: int
    reason: str | None = None
    status: str = "pending"  # pending|approved|rejected
    requested_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: int | None = None
    id: int | None = None

    @property
    def pair(self) -> tuple[int, int]:
        return (self.student_id, self.course_id)

    @property
    def is_true_pending(self) -> bool:
        return self.status == "pending" and self.reviewed_at is None
