"""Student self-service enrollment and the per-student status view.

POST /v1/enroll
    Public, open course only.  pair lock → enroll_and_verify(source="self")
    A course that is not public answers 409 requires_approval; the
    student files an access request instead.

GET /v1/enrollments                              the token subject
GET /v1/admin/students/{student_id}/enrollments  any student (admin)
    One entry per open course: enrolled, requested, or available.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.dependencies import require_role, require_student
from app.models.principal import Principal
from app.repos.fact_store import fact_store
from app.services import enrollment_ops
from app.services.cache import invalidate_pair
from app.services.enrollment_lock import with_enrollment_lock

activity = logging.getLogger("app.activity")

router = APIRouter(tags=["student-enrollments"])

StudentId = Annotated[int, Depends(require_student)]
RequireAdmin = Annotated[Principal, Depends(require_role("admin"))]


class SelfEnrollIn(BaseModel):
    course_id: int = Field(gt=0)


class SelfEnrollOut(BaseModel):
    student_id: int
    course_id: int
    enrolled: bool
    pending_requests_removed: int


class CourseStatusOut(BaseModel):
    course_id: int
    title: str
    course_status: str
    is_public: bool
    enrollment_status: str
    progress: int
    last_accessed: datetime | None
    requested_at: datetime | None


@router.post("/v1/enroll", response_model=SelfEnrollOut)
async def self_enroll(body: SelfEnrollIn, student_id: StudentId) -> SelfEnrollOut:
    async with with_enrollment_lock(student_id, body.course_id):
        outcome = await enrollment_ops.enroll_and_verify(
            fact_store, student_id, body.course_id, source="self", expect_new=True
        )
    await invalidate_pair(student_id, body.course_id)
    activity.info(
        "student=%d enrolled itself course=%d requests_removed=%d",
        student_id,
        body.course_id,
        outcome.pending_requests_removed,
        extra={"student_id": student_id, "course_id": body.course_id, "operation": "enroll"},
    )
    return SelfEnrollOut(
        student_id=student_id,
        course_id=body.course_id,
        enrolled=True,
        pending_requests_removed=outcome.pending_requests_removed,
    )


async def _status_view(student_id: int) -> list[CourseStatusOut]:
    async with fact_store.transaction() as tx:
        statuses = await enrollment_ops.get_student_enrollment_status(tx, student_id)
    return [CourseStatusOut(**s.to_dict()) for s in statuses]


@router.get("/v1/enrollments", response_model=list[CourseStatusOut])
async def my_enrollments(student_id: StudentId) -> list[CourseStatusOut]:
    return await _status_view(student_id)


@router.get(
    "/v1/admin/students/{student_id}/enrollments", response_model=list[CourseStatusOut]
)
async def student_enrollments(
    student_id: int, principal: RequireAdmin
) -> list[CourseStatusOut]:
    return await _status_view(student_id)
