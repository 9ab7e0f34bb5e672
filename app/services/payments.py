"""Payment webhook processing.

The provider delivers each event AT LEAST once.  Enrollment must happen
AT MOST once per event, so every handler runs behind the idempotency
store:

    checkout.session.completed
        execute_with_idempotency("payment_webhook",
                                 {event_id, session_id, type}, ..., 48h)
          └─ pair lock
               ├─ one transaction: mark payment completed + enroll_student
               └─ verify_committed (fresh read of both ledgers)

    payment_intent.payment_failed
        @idempotent("payment_failed", (event_id, payment_intent_id), 24h)
          └─ one transaction: mark pending payments failed

OUTCOMES vs ERRORS
-------------------
"Payment not found" or "course was deleted" will not change on
redelivery, so they are returned as stored outcomes
({"processed": False, "reason": ...}).  Retryable errors (lock busy,
database hiccup) are raised: nothing is recorded, the API answers 503
and the provider tries again.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import UTC, datetime

from app.core.errors import EnrollmentError
from app.repos.ledger_repo import FactStore
from app.services import enrollment_ops
from app.services.cache import invalidate_pair
from app.services.enrollment_lock import with_enrollment_lock
from app.services.idempotency import IdempotentResult, execute_with_idempotency, idempotent

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


async def _complete_checkout(
    store: FactStore, session_id: str, payment_intent_id: str | None
) -> dict:
    async with store.transaction() as tx:
        payment = await tx.get_payment_by_session(session_id)
    if payment is None:
        logger.warning("Checkout completed for unknown session=%s", session_id)
        return {"processed": False, "reason": "payment_not_found", "session_id": session_id}

    pair = (payment.user_id, payment.course_id)
    log_extra = {"student_id": pair[0], "course_id": pair[1], "operation": "payment"}
    async with with_enrollment_lock(*pair):
        try:
            async with store.transaction() as tx:
                # Re-read under the lock; a concurrent delivery may have finished
                payment = await tx.get_payment_by_session(session_id)
                if payment is None or payment.id is None:
                    logger.warning(
                        "Payment for session=%s disappeared before it was locked",
                        session_id,
                        extra=log_extra,
                    )
                    return {
                        "processed": False,
                        "reason": "payment_not_found",
                        "session_id": session_id,
                    }
                already_completed = payment.status == "completed"
                if not already_completed:
                    await tx.mark_payment_completed(
                        payment.id,
                        payment_intent_id=payment_intent_id,
                        at=datetime.now(UTC),
                    )
                # Runs even for a completed payment: a no-op unless a ledger row is missing
                outcome = await enrollment_ops.enroll_student(tx, *pair, source="payment")
            await enrollment_ops.verify_committed(store, *pair)
        except EnrollmentError as exc:
            if exc.retryable:
                raise
            logger.error(
                "Payment for session=%s could not enroll: %s",
                session_id,
                exc.message,
                extra=log_extra,
            )
            return {
                "processed": False,
                "reason": exc.code,
                "session_id": session_id,
                "student_id": pair[0],
                "course_id": pair[1],
            }

    await invalidate_pair(*pair)
    logger.info(
        "Payment completed session=%s student=%d course=%d already_completed=%s",
        session_id,
        pair[0],
        pair[1],
        already_completed,
        extra=log_extra,
    )
    return {
        "processed": True,
        "session_id": session_id,
        "student_id": pair[0],
        "course_id": pair[1],
        "payment_already_completed": already_completed,
        "enrollment": outcome.to_dict(),
    }


async def handle_checkout_completed(
    store: FactStore,
    *,
    event_id: str,
    session_id: str,
    payment_intent_id: str | None = None,
) -> IdempotentResult:
    return await execute_with_idempotency(
        "payment_webhook",
        {"event_id": event_id, "session_id": session_id, "type": CHECKOUT_COMPLETED},
        lambda: _complete_checkout(store, session_id, payment_intent_id),
        ttl_hours=48,
    )


@idempotent("payment_failed", key_params=("event_id", "payment_intent_id"), ttl_hours=24)
async def handle_payment_failed(
    store: FactStore, event_id: str, payment_intent_id: str
) -> dict:
    async with store.transaction() as tx:
        updated = await tx.mark_payment_failed(payment_intent_id, at=datetime.now(UTC))
    logger.info(
        "Payment failed event=%s intent=%s payments_updated=%d",
        event_id,
        payment_intent_id,
        updated,
    )
    return {"processed": updated > 0, "payments_updated": updated}
