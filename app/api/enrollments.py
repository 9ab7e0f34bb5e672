"""Admin enrollment endpoints.

Every mutation follows the same shape:

    pair lock → one transaction → enrollment_ops → commit
             → (enroll only) verify both ledgers in a fresh read → release
             → invalidate the pair's cached progress → activity log

The lock is held across the commit, so the next writer for the same
pair always sees this one's rows.
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.dependencies import require_role
from app.models.principal import Principal
from app.repos.fact_store import fact_store
from app.services import enrollment_ops
from app.services.cache import invalidate_pair
from app.services.enrollment_lock import with_enrollment_lock

logger = logging.getLogger(__name__)
activity = logging.getLogger("app.activity")

router = APIRouter(prefix="/v1/admin/enrollments", tags=["enrollments"])

RequireAdmin = Annotated[Principal, Depends(require_role("admin"))]


class EnrollIn(BaseModel):
    student_id: int = Field(gt=0)
    course_id: int = Field(gt=0)
    source: Literal["admin", "payment", "request-approval"] = "admin"
    # True: a pair already present in both ledgers is a 409, not a no-op
    expect_new: bool = False


class EnrollOut(BaseModel):
    student_id: int
    course_id: int
    student_progress_created: bool
    enrollment_created: bool
    enrollment_reactivated: bool
    pending_requests_removed: int
    already_enrolled: bool


class UnenrollOut(BaseModel):
    student_id: int
    course_id: int
    progress_deleted: bool
    enrollment_deleted: bool


class VerifyOut(BaseModel):
    student_id: int
    course_id: int
    in_progress: bool
    in_enrollments: bool
    verified: bool


class SyncOut(BaseModel):
    student_id: int
    course_id: int
    enrollment_created: bool
    progress_created: bool


@router.post("", response_model=EnrollOut)
async def enroll(body: EnrollIn, principal: RequireAdmin) -> EnrollOut:
    admin_id = principal.numeric_id()
    async with with_enrollment_lock(body.student_id, body.course_id):
        outcome = await enrollment_ops.enroll_and_verify(
            fact_store,
            body.student_id,
            body.course_id,
            admin_id=admin_id,
            source=body.source,
            expect_new=body.expect_new,
        )
    await invalidate_pair(body.student_id, body.course_id)
    activity.info(
        "admin=%s enrolled student=%d course=%d source=%s created=%s reactivated=%s",
        principal.user_id,
        body.student_id,
        body.course_id,
        body.source,
        outcome.created_any,
        outcome.enrollment_reactivated,
        extra={"student_id": body.student_id, "course_id": body.course_id, "operation": "enroll"},
    )
    return EnrollOut(**outcome.to_dict(), already_enrolled=outcome.already_enrolled)


@router.delete("/{student_id}/{course_id}", response_model=UnenrollOut)
async def unenroll(
    student_id: int,
    course_id: int,
    principal: RequireAdmin,
    reason: str | None = None,
) -> UnenrollOut:
    async with with_enrollment_lock(student_id, course_id):
        async with fact_store.transaction() as tx:
            outcome = await enrollment_ops.unenroll_student(
                tx, student_id, course_id, admin_id=principal.numeric_id(), reason=reason
            )
    await invalidate_pair(student_id, course_id)
    activity.info(
        "admin=%s unenrolled student=%d course=%d reason=%r",
        principal.user_id,
        student_id,
        course_id,
        reason,
        extra={"student_id": student_id, "course_id": course_id, "operation": "unenroll"},
    )
    return UnenrollOut(**outcome.to_dict())


@router.get("/{student_id}/{course_id}", response_model=VerifyOut)
async def verify(student_id: int, course_id: int, principal: RequireAdmin) -> VerifyOut:
    async with fact_store.transaction() as tx:
        verification = await enrollment_ops.verify_enrollment_exists(tx, student_id, course_id)
    return VerifyOut(student_id=student_id, course_id=course_id, **verification.to_dict())


@router.post(
    "/{student_id}/{course_id}/sync",
    response_model=SyncOut,
    status_code=status.HTTP_200_OK,
)
async def sync(student_id: int, course_id: int, principal: RequireAdmin) -> SyncOut:
    async with with_enrollment_lock(student_id, course_id):
        async with fact_store.transaction() as tx:
            outcome = await enrollment_ops.sync_enrollment_state(tx, student_id, course_id)
    if outcome.enrollment_created or outcome.progress_created:
        await invalidate_pair(student_id, course_id)
        activity.info(
            "admin=%s synced student=%d course=%d enrollment_created=%s progress_created=%s",
            principal.user_id,
            student_id,
            course_id,
            outcome.enrollment_created,
            outcome.progress_created,
            extra={"student_id": student_id, "course_id": course_id, "operation": "sync"},
        )
    return SyncOut(student_id=student_id, course_id=course_id, **outcome.to_dict())
