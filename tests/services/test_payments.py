from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from app.core.errors import LockBusyError
from app.models.payment import Payment
from app.repos.ledger_repo import InMemoryFactStore, InMemoryLedgerTx
from app.services import enrollment_lock as enrollment_lock_module
from app.services import payments
from app.services.enrollment_lock import with_enrollment_lock
from tests.conftest import COURSE_ID, DRAFT_COURSE_ID, STUDENT_ID


@pytest.fixture
def payment(store: InMemoryFactStore) -> Payment:
    return store.add_payment(
        Payment(user_id=STUDENT_ID, course_id=COURSE_ID, session_id="cs_1")
    )


def _checkout(store: InMemoryFactStore, event_id: str = "evt_1", session_id: str = "cs_1"):
    return asyncio.run(
        payments.handle_checkout_completed(
            store, event_id=event_id, session_id=session_id, payment_intent_id="pi_1"
        )
    )


def test_signature_round_trip() -> None:
    body = b'{"id":"evt_1"}'
    signature = payments.sign_payload("s3cret", body)
    assert payments.verify_signature("s3cret", body, signature) is True
    assert payments.verify_signature("s3cret", body + b" ", signature) is False
    assert payments.verify_signature("other", body, signature) is False
    assert payments.verify_signature("s3cret", body, None) is False


def test_checkout_completes_payment_and_enrolls(store: InMemoryFactStore, payment: Payment) -> None:
    outcome = _checkout(store)
    assert outcome.was_duplicate is False
    assert outcome.result["processed"] is True
    assert outcome.result["enrollment"]["enrollment_created"] is True

    assert store._payments[payment.id].status == "completed"
    assert store._payments[payment.id].payment_intent_id == "pi_1"
    enrollment = store._enrollments[(STUDENT_ID, COURSE_ID)]
    assert enrollment.source == "payment"
    assert (STUDENT_ID, COURSE_ID) in store._progress


def test_redelivery_is_duplicate_and_enrolls_once(
    store: InMemoryFactStore, payment: Payment
) -> None:
    first = _checkout(store)
    second = _checkout(store)
    assert second.was_duplicate is True
    assert second.result == first.result
    assert len(store._enrollments) == 1
    assert len(store._progress) == 1


def test_new_event_for_completed_session_is_noop(
    store: InMemoryFactStore, payment: Payment
) -> None:
    _checkout(store, event_id="evt_1")
    again = _checkout(store, event_id="evt_2")
    assert again.was_duplicate is False
    assert again.result["payment_already_completed"] is True
    assert again.result["enrollment"]["enrollment_created"] is False
    assert len(store._enrollments) == 1


def test_unknown_session_is_a_stored_outcome(store: InMemoryFactStore) -> None:
    first = _checkout(store, session_id="cs_missing")
    assert first.result == {
        "processed": False,
        "reason": "payment_not_found",
        "session_id": "cs_missing",
    }
    assert _checkout(store, session_id="cs_missing").was_duplicate is True


def test_deleted_course_is_a_stored_outcome(store: InMemoryFactStore, payment: Payment) -> None:
    store.remove_course(COURSE_ID)
    outcome = _checkout(store)
    assert outcome.result["processed"] is False
    assert outcome.result["reason"] == "course_not_found"
    # Payment status rolled back with the failed enrollment
    assert store._payments[payment.id].status == "pending"
    assert store._enrollments == {}


def test_payment_gone_before_lock_is_a_stored_outcome(
    store: InMemoryFactStore, payment: Payment, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = InMemoryLedgerTx.get_payment_by_session
    reads = {"n": 0}

    async def get_payment_by_session(self, session_id):
        reads["n"] += 1
        if reads["n"] > 1:
            # Deleted by another writer between the unlocked read and the locked one
            return None
        return await original(self, session_id)

    monkeypatch.setattr(InMemoryLedgerTx, "get_payment_by_session", get_payment_by_session)

    outcome = _checkout(store)
    assert outcome.result == {
        "processed": False,
        "reason": "payment_not_found",
        "session_id": "cs_1",
    }
    assert store._enrollments == {}
    assert _checkout(store).was_duplicate is True


def test_payment_for_closed_course_is_a_stored_outcome(store: InMemoryFactStore) -> None:
    payment = store.add_payment(
        Payment(user_id=STUDENT_ID, course_id=DRAFT_COURSE_ID, session_id="cs_draft")
    )
    outcome = _checkout(store, session_id="cs_draft")
    assert outcome.result["processed"] is False
    assert outcome.result["reason"] == "course_unavailable"
    assert store._payments[payment.id].status == "pending"


def test_ledgers_disagreeing_after_commit_is_reported(
    store: InMemoryFactStore, payment: Payment, monkeypatch: pytest.MonkeyPatch
) -> None:
    pair = (STUDENT_ID, COURSE_ID)
    original = InMemoryFactStore.transaction
    flipped = {"done": False}

    def transaction(self):
        if pair in self._enrollments and not flipped["done"]:
            # Another writer deactivates the pair between commit and verification
            self._enrollments[pair] = replace(self._enrollments[pair], status="inactive")
            flipped["done"] = True
        return original(self)

    monkeypatch.setattr(InMemoryFactStore, "transaction", transaction)

    outcome = _checkout(store)
    assert outcome.result["processed"] is False
    assert outcome.result["reason"] == "inconsistent_state"
    # The committed write stays for reconciliation
    assert store._payments[payment.id].status == "completed"
    assert pair in store._progress


def test_lock_busy_is_raised_and_not_recorded(
    store: InMemoryFactStore, payment: Payment, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        enrollment_lock_module,
        "SETTINGS",
        replace(enrollment_lock_module.SETTINGS, lock_timeout_seconds=0.05),
    )

    async def delivered_while_admin_holds_lock():
        async with with_enrollment_lock(STUDENT_ID, COURSE_ID, timeout=1):
            await payments.handle_checkout_completed(store, event_id="evt_1", session_id="cs_1")

    with pytest.raises(LockBusyError):
        asyncio.run(delivered_while_admin_holds_lock())

    # The redelivery is processed for real
    outcome = _checkout(store)
    assert outcome.was_duplicate is False
    assert outcome.result["processed"] is True


def test_payment_failed_marks_pending_payments(store: InMemoryFactStore) -> None:
    store.add_payment(
        Payment(
            user_id=STUDENT_ID,
            course_id=COURSE_ID,
            session_id="cs_2",
            payment_intent_id="pi_9",
        )
    )
    first = asyncio.run(payments.handle_payment_failed(store, "evt_9", "pi_9"))
    second = asyncio.run(payments.handle_payment_failed(store, "evt_9", "pi_9"))
    assert first.result == {"processed": True, "payments_updated": 1}
    assert second.was_duplicate is True
    assert [p.status for p in store._payments.values()] == ["failed"]
    assert store._enrollments == {}
