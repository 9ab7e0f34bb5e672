"""Student progress: sync writes and read-through cached reads.

POST /v1/progress/{course_id}
    pair lock → tx → update_progress (canonical first, then mirror)
    → invalidate cache → 200

GET /v1/progress/{course_id}
    cache hit  → return
    cache miss → tx → read both ledgers → populate cache → return

The student is always the token subject.  A student with no row in
either ledger gets 404 on both routes; update never creates an
enrollment.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.dependencies import require_student
from app.core.errors import NotEnrolledError
from app.repos.fact_store import fact_store
from app.services import enrollment_ops
from app.services.cache import get_cached, invalidate_pair, progress_cache_key, put_cached
from app.services.enrollment_lock import with_enrollment_lock

router = APIRouter(prefix="/v1/progress", tags=["progress"])

StudentId = Annotated[int, Depends(require_student)]


class ProgressIn(BaseModel):
    progress: float = Field(ge=0, le=100)


class ProgressOut(BaseModel):
    student_id: int
    course_id: int
    progress: int
    status: str | None = None
    completed: bool
    completed_at: datetime | None = None
    last_accessed: datetime | None = None


@router.post("/{course_id}", response_model=ProgressOut)
async def sync_progress(course_id: int, body: ProgressIn, student_id: StudentId) -> ProgressOut:
    async with with_enrollment_lock(student_id, course_id):
        async with fact_store.transaction() as tx:
            outcome = await enrollment_ops.update_progress(
                tx, student_id, course_id, body.progress
            )
            enrollment = await tx.get_enrollment_record(student_id, course_id)
    await invalidate_pair(student_id, course_id)
    return ProgressOut(
        student_id=student_id,
        course_id=course_id,
        progress=outcome.progress,
        status=enrollment.status if enrollment else None,
        completed=outcome.completed,
        completed_at=enrollment.completed_at if enrollment else None,
    )


@router.get("/{course_id}", response_model=ProgressOut)
async def get_progress(course_id: int, student_id: StudentId) -> ProgressOut:
    key = progress_cache_key(student_id, course_id)
    cached = await get_cached(key)
    if cached is not None:
        return ProgressOut.model_validate_json(cached)

    async with fact_store.transaction() as tx:
        enrollment = await tx.get_enrollment_record(student_id, course_id)
        mirror = await tx.get_progress_record(student_id, course_id)
    if enrollment is None and mirror is None:
        raise NotEnrolledError(student_id, course_id)

    # enrollments is canonical; the mirror only fills in when it is missing
    if enrollment is not None:
        value = enrollment.progress
    else:
        value = mirror.total_progress  # type: ignore[union-attr]
    out = ProgressOut(
        student_id=student_id,
        course_id=course_id,
        progress=value,
        status=enrollment.status if enrollment else None,
        completed=value >= 100,
        completed_at=enrollment.completed_at if enrollment else None,
        last_accessed=mirror.last_accessed if mirror else None,
    )
    await put_cached(key, out.model_dump_json())
    return out
