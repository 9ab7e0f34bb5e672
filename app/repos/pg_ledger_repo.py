"""PostgreSQL implementation of the fact store."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.errors import classify_db_error
from app.db.tables import (
    AccessRequestRow,
    CourseRow,
    EnrollmentRow,
    PaymentRow,
    StudentProgressRow,
    UserRow,
)
from app.models.access_request import AccessRequest
from app.models.course import OPEN_STATUSES, Course
from app.models.enrollment import EnrollmentRecord, ProgressRecord
from app.models.payment import Payment
from app.models.user import User
from app.repos.ledger_repo import LedgerSnapshot, StudentRecords


class PgFactStore:
    """Satisfies the FactStore Protocol using PostgreSQL via SQLAlchemy.

    One transaction = one session + session.begin().  SET LOCAL scopes
    the statement timeout to that transaction, so a stuck statement is
    cancelled (SQLSTATE 57014, retryable) and the caller's pair lock is
    released instead of being held indefinitely.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], *, statement_timeout_ms: int
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PgLedgerTx]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if self._statement_timeout_ms > 0:
                        await session.execute(
                            text(
                                f"SET LOCAL statement_timeout = {int(self._statement_timeout_ms)}"
                            )
                        )
                    yield PgLedgerTx(session)
        except (SQLAlchemyError, OSError) as exc:
            raise classify_db_error(exc) from exc


class PgLedgerTx:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # --- reference data ---

    async def get_student(self, student_id: int) -> User | None:
        row = await self._session.get(UserRow, student_id)
        if row is None:
            return None
        return User(
            id=row.id, email=row.email, name=row.name, role=row.role, is_active=row.is_active
        )

    async def get_course(self, course_id: int) -> Course | None:
        row = await self._session.get(CourseRow, course_id)
        if row is None:
            return None
        return Course(id=row.id, title=row.title, status=row.status, is_public=row.is_public)

    async def list_open_courses(self) -> list[Course]:
        stmt = (
            select(CourseRow)
            .where(CourseRow.status.in_(OPEN_STATUSES))
            .order_by(CourseRow.id)
        )
        rows = (await self._session.execute(stmt)).scalars()
        return [
            Course(id=r.id, title=r.title, status=r.status, is_public=r.is_public) for r in rows
        ]

    # --- ledgers ---

    async def get_progress_record(
        self, student_id: int, course_id: int
    ) -> ProgressRecord | None:
        stmt = select(StudentProgressRow).where(
            StudentProgressRow.student_id == student_id,
            StudentProgressRow.course_id == course_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_progress(row)

    async def get_enrollment_record(
        self, student_id: int, course_id: int
    ) -> EnrollmentRecord | None:
        stmt = select(EnrollmentRow).where(
            EnrollmentRow.user_id == student_id,
            EnrollmentRow.course_id == course_id,
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_enrollment(row)

    async def upsert_progress(self, record: ProgressRecord) -> ProgressRecord:
        values = {
            "student_id": record.student_id,
            "course_id": record.course_id,
            "total_progress": record.total_progress,
            "completed_chapters": record.completed_chapters,
        }
        if record.last_accessed is not None:
            values["last_accessed"] = record.last_accessed
        stmt = (
            pg_insert(StudentProgressRow)
            .values(**values)
            .on_conflict_do_update(
                constraint="uq_student_progress_pair",
                set_={k: v for k, v in values.items() if k not in ("student_id", "course_id")},
            )
            .returning(StudentProgressRow)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one()
        return _row_to_progress(row)

    async def upsert_enrollment(self, record: EnrollmentRecord) -> EnrollmentRecord:
        values = {
            "user_id": record.user_id,
            "course_id": record.course_id,
            "status": record.status,
            "progress": record.progress,
            "source": record.source,
            "completed_at": record.completed_at,
        }
        if record.enrolled_at is not None:
            values["enrolled_at"] = record.enrolled_at
        if record.updated_at is not None:
            values["updated_at"] = record.updated_at
        # enrolled_at/source describe the first enrollment; keep them on update
        update_cols = {
            k: v
            for k, v in values.items()
            if k not in ("user_id", "course_id", "enrolled_at", "source")
        }
        stmt = (
            pg_insert(EnrollmentRow)
            .values(**values)
            .on_conflict_do_update(constraint="uq_enrollments_pair", set_=update_cols)
            .returning(EnrollmentRow)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one()
        return _row_to_enrollment(row)

    async def delete_both(self, student_id: int, course_id: int) -> tuple[bool, bool]:
        progress_result = await self._session.execute(
            delete(StudentProgressRow).where(
                StudentProgressRow.student_id == student_id,
                StudentProgressRow.course_id == course_id,
            )
        )
        enrollment_result = await self._session.execute(
            delete(EnrollmentRow).where(
                EnrollmentRow.user_id == student_id,
                EnrollmentRow.course_id == course_id,
            )
        )
        return progress_result.rowcount > 0, enrollment_result.rowcount > 0

    async def list_all(self) -> LedgerSnapshot:
        progress = (await self._session.execute(select(StudentProgressRow))).scalars()
        enrollments = (await self._session.execute(select(EnrollmentRow))).scalars()
        requests = (
            await self._session.execute(
                select(AccessRequestRow).order_by(AccessRequestRow.id)
            )
        ).scalars()
        user_ids = (await self._session.execute(select(UserRow.id))).scalars()
        course_ids = (await self._session.execute(select(CourseRow.id))).scalars()
        return LedgerSnapshot(
            progress=tuple(_row_to_progress(r) for r in progress),
            enrollments=tuple(_row_to_enrollment(r) for r in enrollments),
            requests=tuple(_row_to_request(r) for r in requests),
            user_ids=frozenset(user_ids),
            course_ids=frozenset(course_ids),
        )

    async def list_student_records(self, student_id: int) -> StudentRecords:
        progress = (
            await self._session.execute(
                select(StudentProgressRow).where(StudentProgressRow.student_id == student_id)
            )
        ).scalars()
        enrollments = (
            await self._session.execute(
                select(EnrollmentRow).where(EnrollmentRow.user_id == student_id)
            )
        ).scalars()
        requests = (
            await self._session.execute(
                select(AccessRequestRow)
                .where(AccessRequestRow.student_id == student_id)
                .order_by(AccessRequestRow.id)
            )
        ).scalars()
        return StudentRecords(
            progress=tuple(_row_to_progress(r) for r in progress),
            enrollments=tuple(_row_to_enrollment(r) for r in enrollments),
            requests=tuple(_row_to_request(r) for r in requests),
        )

    # --- access requests ---

    async def add_request(self, request: AccessRequest) -> AccessRequest:
        row = AccessRequestRow(
            student_id=request.student_id,
            course_id=request.course_id,
            reason=request.reason,
            status=request.status,
        )
        if request.requested_at is not None:
            row.requested_at = request.requested_at
        self._session.add(row)
        await self._session.flush()
        await self._session.refresh(row)
        return _row_to_request(row)

    async def get_request(self, request_id: int) -> AccessRequest | None:
        row = await self._session.get(AccessRequestRow, request_id)
        return None if row is None else _row_to_request(row)

    async def find_pending_request(
        self, student_id: int, course_id: int
    ) -> AccessRequest | None:
        stmt = select(AccessRequestRow).where(
            AccessRequestRow.student_id == student_id,
            AccessRequestRow.course_id == course_id,
            AccessRequestRow.status == "pending",
            AccessRequestRow.reviewed_at.is_(None),
        )
        row = (await self._session.execute(stmt)).scalars().first()
        return None if row is None else _row_to_request(row)

    async def mark_request_reviewed(
        self, request_id: int, *, status: str, reviewed_by: int | None, reviewed_at: datetime
    ) -> AccessRequest | None:
        stmt = (
            update(AccessRequestRow)
            .where(AccessRequestRow.id == request_id)
            .values(status=status, reviewed_by=reviewed_by, reviewed_at=reviewed_at)
            .returning(AccessRequestRow)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_request(row)

    async def delete_request(self, request_id: int) -> bool:
        result = await self._session.execute(
            delete(AccessRequestRow).where(AccessRequestRow.id == request_id)
        )
        return result.rowcount > 0

    async def delete_pending_requests(self, student_id: int, course_id: int) -> int:
        result = await self._session.execute(
            delete(AccessRequestRow).where(
                AccessRequestRow.student_id == student_id,
                AccessRequestRow.course_id == course_id,
                AccessRequestRow.status == "pending",
            )
        )
        return result.rowcount

    async def list_pending_requests(self) -> list[AccessRequest]:
        stmt = (
            select(AccessRequestRow)
            .where(
                AccessRequestRow.status == "pending",
                AccessRequestRow.reviewed_at.is_(None),
            )
            .order_by(AccessRequestRow.id)
        )
        rows = (await self._session.execute(stmt)).scalars()
        return [_row_to_request(r) for r in rows]

    async def list_processed_requests(self) -> list[AccessRequest]:
        stmt = (
            select(AccessRequestRow)
            .where(
                (AccessRequestRow.status != "pending")
                | AccessRequestRow.reviewed_at.is_not(None)
            )
            .order_by(AccessRequestRow.id)
        )
        rows = (await self._session.execute(stmt)).scalars()
        return [_row_to_request(r) for r in rows]

    # --- payments ---

    async def get_payment_by_session(self, session_id: str) -> Payment | None:
        stmt = select(PaymentRow).where(PaymentRow.session_id == session_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return Payment(
            id=row.id,
            user_id=row.user_id,
            course_id=row.course_id,
            session_id=row.session_id,
            status=row.status,
            payment_intent_id=row.payment_intent_id,
            updated_at=row.updated_at,
        )

    async def mark_payment_completed(
        self, payment_id: int, *, payment_intent_id: str | None, at: datetime
    ) -> None:
        values: dict[str, object] = {"status": "completed", "updated_at": at}
        if payment_intent_id:
            values["payment_intent_id"] = payment_intent_id
        await self._session.execute(
            update(PaymentRow).where(PaymentRow.id == payment_id).values(**values)
        )

    async def mark_payment_failed(self, payment_intent_id: str, *, at: datetime) -> int:
        result = await self._session.execute(
            update(PaymentRow)
            .where(
                PaymentRow.payment_intent_id == payment_intent_id,
                PaymentRow.status == "pending",
            )
            .values(status="failed", updated_at=at)
        )
        return result.rowcount


def _row_to_progress(row: StudentProgressRow) -> ProgressRecord:
    return ProgressRecord(
        id=row.id,
        student_id=row.student_id,
        course_id=row.course_id,
        total_progress=row.total_progress,
        completed_chapters=row.completed_chapters or json.dumps([]),
        last_accessed=row.last_accessed,
    )


def _row_to_enrollment(row: EnrollmentRow) -> EnrollmentRecord:
    return EnrollmentRecord(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        status=row.status,
        progress=row.progress,
        source=row.source,
        enrolled_at=row.enrolled_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _row_to_request(row: AccessRequestRow) -> AccessRequest:
    return AccessRequest(
        id=row.id,
        student_id=row.student_id,
        course_id=row.course_id,
        reason=row.reason,
        status=row.status,
        requested_at=row.requested_at,
        reviewed_at=row.reviewed_at,
        reviewed_by=row.reviewed_by,
    )
