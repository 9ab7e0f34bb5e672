from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from app.core.logging import _ContainerFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers


@pytest.mark.parametrize(
    ("name", "expected"),
    [("debug", logging.DEBUG), ("warning", logging.WARNING), ("nonexistent", logging.INFO)],
)
def test_setup_logging_sets_root_level(name: str, expected: int) -> None:
    setup_logging(name)
    assert logging.getLogger().level == expected


def test_setup_logging_installs_single_handler() -> None:
    setup_logging("info")
    setup_logging("info")
    assert len(logging.getLogger().handlers) == 1


@pytest.mark.parametrize("noisy", ["uvicorn", "sqlalchemy.engine", "httpx"])
def test_noisy_libraries_capped_at_warning(noisy: str) -> None:
    setup_logging("debug")
    assert logging.getLogger(noisy).level == logging.WARNING


def test_noisy_libraries_follow_stricter_level() -> None:
    setup_logging("error")
    assert logging.getLogger("sqlalchemy.engine").level == logging.ERROR


@pytest.mark.parametrize(
    ("level", "has_location"),
    [(logging.INFO, False), (logging.WARNING, True), (logging.ERROR, True)],
)
def test_location_suffix_only_for_warnings_and_up(level: int, has_location: bool) -> None:
    record = logging.LogRecord(
        name="app.services.reconciliation",
        level=level,
        pathname="reconciliation.py",
        lineno=42,
        msg="scan done",
        args=(),
        exc_info=None,
    )
    output = _ContainerFormatter().format(record)
    assert "scan done" in output
    assert ("[reconciliation.py:42]" in output) is has_location
