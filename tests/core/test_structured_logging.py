"""JSON log output.

The aggregation pipeline filters on top-level keys: "everything that
happened to pair (11, 5)" is a query on student_id and course_id, so
those must come out as real JSON fields, not buried in the message.
"""

from __future__ import annotations

import json
import logging
import sys

from app.core.logging import _ContainerFormatter, _JsonFormatter


def _record(msg: str = "enroll student=11 course=5", level: int = logging.INFO, **extra):
    record = logging.LogRecord(
        name="app.services.enrollment_ops",
        level=level,
        pathname="enrollment_ops.py",
        lineno=7,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_produces_valid_json() -> None:
    parsed = json.loads(_JsonFormatter().format(_record()))
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "app.services.enrollment_ops"
    assert parsed["message"] == "enroll student=11 course=5"
    assert "timestamp" in parsed


def test_pair_context_lifted_to_top_level() -> None:
    record = _record(student_id=11, course_id=5, operation="enroll", request_id="abc-123")
    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["student_id"] == 11
    assert parsed["course_id"] == 5
    assert parsed["operation"] == "enroll"
    assert parsed["request_id"] == "abc-123"


def test_request_fields_from_middleware() -> None:
    record = _record(method="POST", path="/v1/admin/enrollments", status_code=200, duration_ms=3.5)
    parsed = json.loads(_JsonFormatter().format(record))
    assert parsed["path"] == "/v1/admin/enrollments"
    assert parsed["status_code"] == 200
    assert parsed["duration_ms"] == 3.5


def test_absent_context_fields_are_omitted() -> None:
    parsed = json.loads(_JsonFormatter().format(_record()))
    assert "student_id" not in parsed
    assert "operation" not in parsed


def test_unrelated_extra_fields_are_not_emitted() -> None:
    parsed = json.loads(_JsonFormatter().format(_record(password="hunter2")))
    assert "password" not in parsed


def test_json_formatter_includes_exception_info() -> None:
    try:
        raise RuntimeError("ledger write failed")
    except RuntimeError:
        record = _record("repair failed", level=logging.ERROR)
        record.exc_info = sys.exc_info()
        output = _JsonFormatter().format(record)

    parsed = json.loads(output)
    assert "RuntimeError: ledger write failed" in parsed["exception"]


def test_container_formatter_is_plain_text() -> None:
    output = _ContainerFormatter().format(_record(student_id=11))
    assert "INFO" in output
    assert "app.services.enrollment_ops" in output
    assert output.rstrip().endswith("enroll student=11 course=5")
    assert not output.lstrip().startswith("{")


def test_container_formatter_appends_pair() -> None:
    output = _ContainerFormatter().format(_record(student_id=11, course_id=5, operation="enroll"))
    assert output.endswith("enroll student=11 course=5  pair=11:5")
