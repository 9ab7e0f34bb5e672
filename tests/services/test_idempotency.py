from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.services import idempotency
from app.services.idempotency import (
    StoredResult,
    execute_with_idempotency,
    generate_idempotency_key,
    idempotency_store,
    idempotent,
)


def test_key_is_stable_across_param_order() -> None:
    a = generate_idempotency_key("payment_webhook", {"event_id": "e1", "session_id": "s1"})
    b = generate_idempotency_key("payment_webhook", {"session_id": "s1", "event_id": "e1"})
    assert a == b
    assert a.startswith("payment_webhook:")


def test_key_differs_by_operation_and_params() -> None:
    base = generate_idempotency_key("payment_webhook", {"event_id": "e1"})
    assert base != generate_idempotency_key("payment_failed", {"event_id": "e1"})
    assert base != generate_idempotency_key("payment_webhook", {"event_id": "e2"})


def test_second_call_is_duplicate_and_fn_runs_once() -> None:
    calls: list[int] = []

    async def fn() -> dict:
        calls.append(1)
        return {"processed": True, "n": len(calls)}

    async def twice():
        first = await execute_with_idempotency("op", {"id": 1}, fn)
        second = await execute_with_idempotency("op", {"id": 1}, fn)
        return first, second

    first, second = asyncio.run(twice())
    assert first.was_duplicate is False
    assert second.was_duplicate is True
    assert second.result == {"processed": True, "n": 1}
    assert len(calls) == 1


def test_exception_is_not_recorded() -> None:
    attempts: list[int] = []

    async def flaky() -> dict:
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return {"ok": True}

    with pytest.raises(RuntimeError):
        asyncio.run(execute_with_idempotency("op", {"id": 2}, flaky))

    result = asyncio.run(execute_with_idempotency("op", {"id": 2}, flaky))
    assert result.was_duplicate is False
    assert result.result == {"ok": True}
    assert len(attempts) == 2


def test_expired_record_is_a_miss() -> None:
    key = generate_idempotency_key("op", {"id": 3})
    past = datetime.now(UTC) - timedelta(hours=1)
    idempotency_store._records[key] = StoredResult(  # type: ignore[union-attr]
        key=key, operation="op", result={"old": True}, created_at=past, expires_at=past
    )

    async def fn() -> dict:
        return {"new": True}

    result = asyncio.run(execute_with_idempotency("op", {"id": 3}, fn))
    assert result.was_duplicate is False
    assert result.result == {"new": True}


def test_purge_expired_removes_only_expired() -> None:
    now = datetime.now(UTC)
    for name, expires in (("old", now - timedelta(minutes=1)), ("live", now + timedelta(hours=1))):
        idempotency_store._records[name] = StoredResult(  # type: ignore[union-attr]
            key=name, operation="op", result=None, created_at=now, expires_at=expires
        )
    assert asyncio.run(idempotency.purge_expired()) == 1
    assert list(idempotency_store._records) == ["live"]  # type: ignore[union-attr]


def test_store_read_failure_fails_open(monkeypatch: pytest.MonkeyPatch) -> None:
    async def broken_get(key: str):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(idempotency_store, "get", broken_get)

    async def fn() -> dict:
        return {"ran": True}

    result = asyncio.run(execute_with_idempotency("op", {"id": 4}, fn))
    assert result.was_duplicate is False
    assert result.result == {"ran": True}


def test_store_write_failure_still_returns_result(monkeypatch: pytest.MonkeyPatch) -> None:
    async def broken_put(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("connection reset"))

    monkeypatch.setattr(idempotency_store, "put", broken_put)

    async def fn() -> dict:
        return {"ran": True}

    result = asyncio.run(execute_with_idempotency("op", {"id": 5}, fn))
    assert result.result == {"ran": True}


def test_decorator_keys_on_selected_params() -> None:
    calls: list[str] = []

    @idempotent("mark", key_params=("event_id",), ttl_hours=1)
    async def mark(event_id: str, note: str = "") -> dict:
        calls.append(note)
        return {"event_id": event_id}

    async def run():
        a = await mark("evt-1", note="first")
        b = await mark(event_id="evt-1", note="second")
        c = await mark("evt-2")
        return a, b, c

    a, b, c = asyncio.run(run())
    assert a.was_duplicate is False
    assert b.was_duplicate is True
    assert c.was_duplicate is False
    assert calls == ["first", ""]
