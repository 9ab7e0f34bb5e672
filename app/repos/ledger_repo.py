"""Fact store: the two enrollment ledgers plus the request ledger.

Every write goes through a transaction handle:

    async with fact_store.transaction() as tx:
        await tx.upsert_enrollment(...)
        await tx.upsert_progress(...)

Everything written through one handle commits together or not at all.
A partial write (one ledger updated, the other not) is the failure this
layer exists to prevent, so there is no "auto-commit" entry point.

IN-MEMORY TRANSACTIONS
-----------------------
InMemoryFactStore gives each transaction a working copy of the tables
taken at begin.  Reads and writes hit the copy; the set of touched keys
is recorded.  On a clean exit the change set is validated against the
live tables and applied in one synchronous step (no await in between,
so no other task can interleave).  On an exception nothing is applied.

Validation mirrors the Postgres constraints:
  - a pair inserted by this transaction that another transaction has
    since inserted → unique violation (23505)
  - a second pending request for the same pair → unique violation

Both raise DatabaseError(retryable=False), the same thing PgFactStore
raises for an IntegrityError.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from app.core.errors import DatabaseError
from app.models.access_request import AccessRequest
from app.models.course import Course
from app.models.enrollment import EnrollmentRecord, ProgressRecord
from app.models.payment import Payment
from app.models.user import User

logger = logging.getLogger(__name__)

Pair = tuple[int, int]


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Everything a reconciliation scan needs, read in one transaction."""

    progress: tuple[ProgressRecord, ...]
    enrollments: tuple[EnrollmentRecord, ...]
    requests: tuple[AccessRequest, ...]
    user_ids: frozenset[int]
    course_ids: frozenset[int]


@dataclass(frozen=True, slots=True)
class StudentRecords:
    """One student's rows in all three ledgers."""

    progress: tuple[ProgressRecord, ...]
    enrollments: tuple[EnrollmentRecord, ...]
    requests: tuple[AccessRequest, ...]


class LedgerTx(Protocol):
    # reference data
    async def get_student(self, student_id: int) -> User | None: ...
    async def get_course(self, course_id: int) -> Course | None: ...
    async def list_open_courses(self) -> list[Course]: ...

    # ledgers
    async def get_progress_record(
        self, student_id: int, course_id: int
    ) -> ProgressRecord | None: ...
    async def get_enrollment_record(
        self, student_id: int, course_id: int
    ) -> EnrollmentRecord | None: ...
    async def upsert_progress(self, record: ProgressRecord) -> ProgressRecord: ...
    async def upsert_enrollment(self, record: EnrollmentRecord) -> EnrollmentRecord: ...
    async def delete_both(self, student_id: int, course_id: int) -> tuple[bool, bool]: ...
    async def list_all(self) -> LedgerSnapshot: ...
    async def list_student_records(self, student_id: int) -> StudentRecords: ...

    # access requests
    async def add_request(self, request: AccessRequest) -> AccessRequest: ...
    async def get_request(self, request_id: int) -> AccessRequest | None: ...
    async def find_pending_request(
        self, student_id: int, course_id: int
    ) -> AccessRequest | None: ...
    async def mark_request_reviewed(
        self, request_id: int, *, status: str, reviewed_by: int | None, reviewed_at: datetime
    ) -> AccessRequest | None: ...
    async def delete_request(self, request_id: int) -> bool: ...
    async def delete_pending_requests(self, student_id: int, course_id: int) -> int: ...
    async def list_pending_requests(self) -> list[AccessRequest]: ...
    async def list_processed_requests(self) -> list[AccessRequest]: ...

    # payments
    async def get_payment_by_session(self, session_id: str) -> Payment | None: ...
    async def mark_payment_completed(
        self, payment_id: int, *, payment_intent_id: str | None, at: datetime
    ) -> None: ...
    async def mark_payment_failed(self, payment_intent_id: str, *, at: datetime) -> int: ...


class FactStore(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[LedgerTx]: ...


def _unique_violation(table: str, pair: Pair) -> DatabaseError:
    return DatabaseError(
        f"duplicate key value violates unique constraint on {table} "
        f"(student={pair[0]}, course={pair[1]})",
        retryable=False,
        category="integrity_error",
        sqlstate="23505",
    )


class InMemoryFactStore:
    """Dict-backed fact store for tests and local dev (no DATABASE_URL)."""

    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._courses: dict[int, Course] = {}
        self._progress: dict[Pair, ProgressRecord] = {}
        self._enrollments: dict[Pair, EnrollmentRecord] = {}
        self._requests: dict[int, AccessRequest] = {}
        self._payments: dict[int, Payment] = {}
        self._ids = itertools.count(1)

    # --- seeding (reference data is not written by the core) ---

    def add_user(self, user: User) -> User:
        self._users[user.id] = user
        return user

    def add_course(self, course: Course) -> Course:
        self._courses[course.id] = course
        return course

    def remove_course(self, course_id: int) -> None:
        self._courses.pop(course_id, None)

    def add_payment(self, payment: Payment) -> Payment:
        if payment.id is None:
            payment = replace(payment, id=self.next_id())
        self._payments[payment.id] = payment  # type: ignore[index]
        return payment

    def clear(self) -> None:
        for table in (
            self._users,
            self._courses,
            self._progress,
            self._enrollments,
            self._requests,
            self._payments,
        ):
            table.clear()

    def next_id(self) -> int:
        # Like a Postgres sequence: not rolled back with the transaction
        return next(self._ids)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryLedgerTx]:
        tx = InMemoryLedgerTx(self)
        yield tx
        tx._commit()


class InMemoryLedgerTx:
    def __init__(self, store: InMemoryFactStore) -> None:
        self._store = store
        self._progress = dict(store._progress)
        self._enrollments = dict(store._enrollments)
        self._requests = dict(store._requests)
        self._payments = dict(store._payments)
        self._touched_progress: set[Pair] = set()
        self._touched_enrollments: set[Pair] = set()
        self._inserted_progress: set[Pair] = set()
        self._inserted_enrollments: set[Pair] = set()
        self._touched_requests: set[int] = set()
        self._touched_payments: set[int] = set()

    # --- reference data ---

    async def get_student(self, student_id: int) -> User | None:
        return self._store._users.get(student_id)

    async def get_course(self, course_id: int) -> Course | None:
        return self._store._courses.get(course_id)

    async def list_open_courses(self) -> list[Course]:
        return sorted(
            (c for c in self._store._courses.values() if c.is_open), key=lambda c: c.id
        )

    # --- ledgers ---

    async def get_progress_record(
        self, student_id: int, course_id: int
    ) -> ProgressRecord | None:
        return self._progress.get((student_id, course_id))

    async def get_enrollment_record(
        self, student_id: int, course_id: int
    ) -> EnrollmentRecord | None:
        return self._enrollments.get((student_id, course_id))

    async def upsert_progress(self, record: ProgressRecord) -> ProgressRecord:
        pair = record.pair
        existing = self._progress.get(pair)
        if existing is None:
            record = replace(record, id=self._store.next_id())
            self._inserted_progress.add(pair)
        else:
            record = replace(record, id=existing.id)
        self._progress[pair] = record
        self._touched_progress.add(pair)
        return record

    async def upsert_enrollment(self, record: EnrollmentRecord) -> EnrollmentRecord:
        pair = record.pair
        existing = self._enrollments.get(pair)
        if existing is None:
            record = replace(record, id=self._store.next_id())
            self._inserted_enrollments.add(pair)
        else:
            record = replace(record, id=existing.id)
        self._enrollments[pair] = record
        self._touched_enrollments.add(pair)
        return record

    async def delete_both(self, student_id: int, course_id: int) -> tuple[bool, bool]:
        pair = (student_id, course_id)
        progress_deleted = self._progress.pop(pair, None) is not None
        enrollment_deleted = self._enrollments.pop(pair, None) is not None
        self._touched_progress.add(pair)
        self._touched_enrollments.add(pair)
        return progress_deleted, enrollment_deleted

    async def list_all(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            progress=tuple(self._progress.values()),
            enrollments=tuple(self._enrollments.values()),
            requests=tuple(sorted(self._requests.values(), key=lambda r: r.id or 0)),
            user_ids=frozenset(self._store._users),
            course_ids=frozenset(self._store._courses),
        )

    async def list_student_records(self, student_id: int) -> StudentRecords:
        return StudentRecords(
            progress=tuple(r for r in self._progress.values() if r.student_id == student_id),
            enrollments=tuple(r for r in self._enrollments.values() if r.user_id == student_id),
            requests=tuple(
                sorted(
                    (r for r in self._requests.values() if r.student_id == student_id),
                    key=lambda r: r.id or 0,
                )
            ),
        )

    # --- access requests ---

    async def add_request(self, request: AccessRequest) -> AccessRequest:
        request = replace(request, id=self._store.next_id())
        self._requests[request.id] = request  # type: ignore[index]
        self._touched_requests.add(request.id)  # type: ignore[arg-type]
        return request

    async def get_request(self, request_id: int) -> AccessRequest | None:
        return self._requests.get(request_id)

    async def find_pending_request(
        self, student_id: int, course_id: int
    ) -> AccessRequest | None:
        for request in self._requests.values():
            if request.pair == (student_id, course_id) and request.is_true_pending:
                return request
        return None

    async def mark_request_reviewed(
        self, request_id: int, *, status: str, reviewed_by: int | None, reviewed_at: datetime
    ) -> AccessRequest | None:
        request = self._requests.get(request_id)
        if request is None:
            return None
        updated = replace(
            request, status=status, reviewed_by=reviewed_by, reviewed_at=reviewed_at
        )
        self._requests[request_id] = updated
        self._touched_requests.add(request_id)
        return updated

    async def delete_request(self, request_id: int) -> bool:
        self._touched_requests.add(request_id)
        return self._requests.pop(request_id, None) is not None

    async def delete_pending_requests(self, student_id: int, course_id: int) -> int:
        doomed = [
            rid
            for rid, r in self._requests.items()
            if r.pair == (student_id, course_id) and r.status == "pending"
        ]
        for rid in doomed:
            del self._requests[rid]
            self._touched_requests.add(rid)
        return len(doomed)

    async def list_pending_requests(self) -> list[AccessRequest]:
        pending = [r for r in self._requests.values() if r.is_true_pending]
        return sorted(pending, key=lambda r: r.id or 0)

    async def list_processed_requests(self) -> list[AccessRequest]:
        processed = [r for r in self._requests.values() if not r.is_true_pending]
        return sorted(processed, key=lambda r: r.id or 0)

    # --- payments ---

    async def get_payment_by_session(self, session_id: str) -> Payment | None:
        for payment in self._payments.values():
            if payment.session_id == session_id:
                return payment
        return None

    async def mark_payment_completed(
        self, payment_id: int, *, payment_intent_id: str | None, at: datetime
    ) -> None:
        payment = self._payments.get(payment_id)
        if payment is None:
            return
        self._payments[payment_id] = replace(
            payment,
            status="completed",
            payment_intent_id=payment_intent_id or payment.payment_intent_id,
            updated_at=at,
        )
        self._touched_payments.add(payment_id)

    async def mark_payment_failed(self, payment_intent_id: str, *, at: datetime) -> int:
        count = 0
        for pid, payment in list(self._payments.items()):
            if payment.payment_intent_id == payment_intent_id and payment.status == "pending":
                self._payments[pid] = replace(payment, status="failed", updated_at=at)
                self._touched_payments.add(pid)
                count += 1
        return count

    # --- commit ---

    def _validate(self) -> None:
        store = self._store
        for pair in self._inserted_progress:
            live = store._progress.get(pair)
            mine = self._progress.get(pair)
            if mine is not None and live is not None and live.id != mine.id:
                raise _unique_violation("student_progress", pair)
        for pair in self._inserted_enrollments:
            live_e = store._enrollments.get(pair)
            mine_e = self._enrollments.get(pair)
            if mine_e is not None and live_e is not None and live_e.id != mine_e.id:
                raise _unique_violation("enrollments", pair)
        for rid in self._touched_requests:
            mine_r = self._requests.get(rid)
            if mine_r is None or not mine_r.is_true_pending:
                continue
            for other in store._requests.values():
                if (
                    other.id != rid
                    and other.pair == mine_r.pair
                    and other.is_true_pending
                    and other.id not in self._touched_requests
                ):
                    raise _unique_violation("access_requests", mine_r.pair)

    def _commit(self) -> None:
        self._validate()
        store = self._store
        for table, live, touched in (
            (self._progress, store._progress, self._touched_progress),
            (self._enrollments, store._enrollments, self._touched_enrollments),
            (self._requests, store._requests, self._touched_requests),
            (self._payments, store._payments, self._touched_payments),
        ):
            for key in touched:
                if key in table:
                    live[key] = table[key]  # type: ignore[index]
                else:
                    live.pop(key, None)  # type: ignore[arg-type]
        logger.debug(
            "In-memory commit  progress=%d enrollments=%d requests=%d payments=%d",
            len(self._touched_progress),
            len(self._touched_enrollments),
            len(self._touched_requests),
            len(self._touched_payments),
        )
