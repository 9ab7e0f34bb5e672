"""Module-level fact store singleton.

Follows the same pattern as app/db/engine.py: with DATABASE_URL set the
ledgers live in Postgres; without it (tests, local dev) they live in a
process-local InMemoryFactStore.
"""

from __future__ import annotations

from app.core.config import SETTINGS
from app.db.engine import async_session_factory
from app.repos.ledger_repo import FactStore, InMemoryFactStore
from app.repos.pg_ledger_repo import PgFactStore

if async_session_factory is not None:
    fact_store: FactStore = PgFactStore(
        async_session_factory, statement_timeout_ms=SETTINGS.statement_timeout_ms
    )
else:
    fact_store = InMemoryFactStore()
