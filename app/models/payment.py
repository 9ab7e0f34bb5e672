from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Payment:
    """Checkout session record; lets the webhook resolve the pair it paid for."""

    user_id: int
    course_id: int
    session_id: str
    status: str = "pending"  # pending|completed|failed
    payment_intent_id: str | None = None
    updated_at: datetime | None = None
    id: int | None = None
