"""Logging configuration for enrollment-service.

Two output modes share one root handler on stdout:

  _ContainerFormatter: single-line, human-readable, for local dev and
    `docker compose logs`.

  _JsonFormatter: one JSON object per line, for log aggregation.
    Enable with LOG_JSON=true.

WHAT THE ENROLLMENT CORE LOGS
-------------------------------
Every mutation of the two enrollment ledgers logs the pair it touched
and which ledger rows were created or deleted:

  INFO  app.services.enrollment_ops  enroll student=11 course=5 source=admin
        progress_created=True enrollment_created=True

When a caller passes the pair through `extra={"student_id": ..,
"course_id": .., "operation": ..}`, the JSON formatter lifts those keys
to the top level so "everything that happened to pair (11, 5)" is one
filter in the aggregation UI, across webhook, admin and approval paths.

Admin actions additionally go to the `app.activity` logger, which an
external activity-log sink can subscribe to by name.
"""

from __future__ import annotations

import json
import logging
import sys

_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

REQUEST_FIELDS = ("request_id", "method", "path", "user_id", "status_code", "duration_ms")
PAIR_FIELDS = ("student_id", "course_id", "operation")

# Library loggers capped at WARNING even when the app runs at DEBUG
_NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "httpcore",
    "httpx",
    "sqlalchemy.engine",
)


def _timestamp_with_millis(formatter: logging.Formatter, record: logging.LogRecord) -> str:
    base = logging.Formatter.formatTime(formatter, record, _DATEFMT)
    # strftime has no milliseconds; splice .NNN in before the +0000 offset
    return f"{base[:-5]}.{int(record.msecs):03d}{base[-5:]}"


class _ContainerFormatter(logging.Formatter):
    """One line per record for container stdout.

    WARNING and above get a [file:line] suffix.  Records that carry a
    pair get " pair=<student>:<course>" so grep works without JSON.
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s  %(message)s", datefmt=_DATEFMT
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        return _timestamp_with_millis(self, record)

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        student_id = getattr(record, "student_id", None)
        course_id = getattr(record, "course_id", None)
        if student_id is not None and course_id is not None:
            line += f"  pair={student_id}:{course_id}"
        if record.levelno >= logging.WARNING:
            line += f"  [{record.filename}:{record.lineno}]"
        return line


class _JsonFormatter(logging.Formatter):
    """JSON Lines: one object per record.

    Request fields come from RequestContextMiddleware; pair fields come
    from the enrollment services via `extra=`.  Anything else passed in
    `extra` stays out of the output.
    """

    def __init__(self) -> None:
        super().__init__(datefmt=_DATEFMT)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        return _timestamp_with_millis(self, record)

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in REQUEST_FIELDS + PAIR_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Install one stdout handler on the root logger.

    Unknown level names fall back to INFO.  Safe to call more than once.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
