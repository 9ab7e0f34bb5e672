"""Translate SQLAlchemy / driver exceptions into DatabaseError.

Primary signal is the Postgres SQLSTATE on the wrapped DBAPI error;
exception type and message are the fallback.

Retryable (transient):
  40001  serialization failure
  40P01  deadlock detected
  57014  statement timeout (our per-transaction STATEMENT_TIMEOUT_MS)
  57P01  admin shutdown / 57P03 cannot connect now
  connection drops, resets, pool timeouts

Terminal:
  23xxx  integrity violations (duplicate pair, FK to a deleted course)
  42xxx  schema/SQL errors
  28xxx  permission errors
"""

from __future__ import annotations

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.core.errors import DatabaseError

_RETRYABLE_SQLSTATES = {
    "40001": "serialization_conflict",
    "40P01": "deadlock",
    "57014": "statement_timeout",
    "57P01": "admin_shutdown",
    "57P03": "cannot_connect_now",
}

_CONNECTIVITY_PATTERNS = (
    "connection",
    "timeout",
    "reset",
    "network",
    "broken pipe",
    "closed",
)


def _extract_sqlstate(exc: BaseException) -> str | None:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        # psycopg exposes pgcode; asyncpg exposes sqlstate
        for attr in ("pgcode", "sqlstate"):
            value = getattr(exc.orig, attr, None)
            if value:
                return str(value)
    return None


def classify_db_error(exc: BaseException) -> DatabaseError:
    """Return a DatabaseError describing `exc` (the caller raises it)."""
    sqlstate = _extract_sqlstate(exc)
    message = str(exc).splitlines()[0] if str(exc) else type(exc).__name__

    if sqlstate in _RETRYABLE_SQLSTATES:
        return DatabaseError(
            message,
            retryable=True,
            category=_RETRYABLE_SQLSTATES[sqlstate],
            sqlstate=sqlstate,
        )

    if (sqlstate and sqlstate.startswith("23")) or isinstance(exc, IntegrityError):
        return DatabaseError(
            message, retryable=False, category="integrity_error", sqlstate=sqlstate
        )

    if sqlstate and sqlstate.startswith("42"):
        return DatabaseError(
            message, retryable=False, category="schema_error", sqlstate=sqlstate
        )

    if sqlstate and sqlstate.startswith("28"):
        return DatabaseError(
            message, retryable=False, category="permission_error", sqlstate=sqlstate
        )

    if isinstance(exc, (PoolTimeoutError, InterfaceError, ConnectionError, OSError)):
        return DatabaseError(
            message, retryable=True, category="connectivity_error", sqlstate=sqlstate
        )

    if isinstance(exc, OperationalError):
        lowered = message.lower()
        if any(pattern in lowered for pattern in _CONNECTIVITY_PATTERNS):
            return DatabaseError(
                message, retryable=True, category="connectivity_error", sqlstate=sqlstate
            )
        return DatabaseError(
            message, retryable=False, category="operational_error", sqlstate=sqlstate
        )

    return DatabaseError(
        message, retryable=False, category="unknown_error", sqlstate=sqlstate
    )
