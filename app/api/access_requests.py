from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.dependencies import require_role, require_student
from app.models.access_request import AccessRequest
from app.models.principal import Principal
from app.repos.fact_store import fact_store
from app.services import access_requests

activity = logging.getLogger("app.activity")

router = APIRouter(tags=["access-requests"])

RequireAdmin = Annotated[Principal, Depends(require_role("admin"))]


class AccessRequestIn(BaseModel):
    course_id: int = Field(gt=0)
    reason: str | None = Field(default=None, max_length=2000)


class AccessRequestOut(BaseModel):
    id: int
    student_id: int
    course_id: int
    reason: str | None
    status: str
    requested_at: datetime | None
    reviewed_at: datetime | None
    reviewed_by: int | None


class ApprovalOut(BaseModel):
    request_id: int
    student_id: int
    course_id: int
    enrolled: bool
    enrollment: dict | None
    error: str | None
    message: str | None
    retryable: bool


def _out(request: AccessRequest) -> AccessRequestOut:
    if request.id is None:
        raise ValueError("access request has not been stored")
    return AccessRequestOut(
        id=request.id,
        student_id=request.student_id,
        course_id=request.course_id,
        reason=request.reason,
        status=request.status,
        requested_at=request.requested_at,
        reviewed_at=request.reviewed_at,
        reviewed_by=request.reviewed_by,
    )


@router.post(
    "/v1/access-requests",
    response_model=AccessRequestOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_access_request(
    body: AccessRequestIn,
    student_id: Annotated[int, Depends(require_student)],
) -> AccessRequestOut:
    request = await access_requests.create_request(
        fact_store, student_id, body.course_id, body.reason
    )
    return _out(request)


@router.get("/v1/admin/access-requests", response_model=list[AccessRequestOut])
async def list_access_requests(principal: RequireAdmin) -> list[AccessRequestOut]:
    return [_out(r) for r in await access_requests.list_pending_requests(fact_store)]


@router.post("/v1/admin/access-requests/{request_id}/approve", response_model=ApprovalOut)
async def approve_access_request(request_id: int, principal: RequireAdmin) -> ApprovalOut:
    """200 either way; `enrolled` says whether the enrollment landed.

    A failed enrollment leaves the request approved and is reported in
    the body, not as an error status: the approval itself succeeded.
    """
    outcome = await access_requests.approve_request(
        fact_store, request_id, principal.numeric_id()
    )
    activity.info(
        "admin=%s approved request=%d student=%d course=%d enrolled=%s error=%s",
        principal.user_id,
        request_id,
        outcome.student_id,
        outcome.course_id,
        outcome.enrolled,
        outcome.error,
        extra={
            "student_id": outcome.student_id,
            "course_id": outcome.course_id,
            "operation": "approve",
        },
    )
    return ApprovalOut(**outcome.to_dict())


@router.post("/v1/admin/access-requests/{request_id}/reject", response_model=AccessRequestOut)
async def reject_access_request(request_id: int, principal: RequireAdmin) -> AccessRequestOut:
    rejected = await access_requests.reject_request(
        fact_store, request_id, principal.numeric_id()
    )
    activity.info(
        "admin=%s rejected request=%d student=%d course=%d",
        principal.user_id,
        request_id,
        rejected.student_id,
        rejected.course_id,
        extra={
            "student_id": rejected.student_id,
            "course_id": rejected.course_id,
            "operation": "reject",
        },
    )
    return _out(rejected)
