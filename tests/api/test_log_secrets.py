"""Assert that bearer tokens and webhook secrets never appear in log output.

These tests exercise endpoints that handle sensitive data and verify
the log records contain no leaked secrets.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from app.api import payments as payments_api
from app.models.payment import Payment
from app.repos.ledger_repo import InMemoryFactStore
from app.services.payments import sign_payload
from tests.conftest import COURSE_ID, STUDENT_ID, bearer

_SECRET = "whsec_super-s3cret"


def test_admin_enroll_does_not_log_bearer_token(
    client: TestClient, admin_token: str, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.DEBUG):
        resp = client.post(
            "/v1/admin/enrollments",
            json={"student_id": STUDENT_ID, "course_id": COURSE_ID},
            headers=bearer(admin_token),
        )
    assert resp.status_code == 200

    all_log_text = " ".join(caplog.messages)
    assert admin_token not in all_log_text, "Bearer token found in log output!"


def test_rejected_token_is_not_logged(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    garbage = "not.a.valid-jwt-but-still-secret"
    with caplog.at_level(logging.DEBUG):
        resp = client.get("/v1/progress/5", headers=bearer(garbage))
    assert resp.status_code == 401

    all_log_text = " ".join(caplog.messages)
    assert garbage not in all_log_text, "Rejected token found in log output!"


def test_webhook_does_not_log_secret_or_signature(
    client: TestClient,
    store: InMemoryFactStore,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setattr(
        payments_api,
        "SETTINGS",
        replace(payments_api.SETTINGS, payment_webhook_secret=_SECRET),
    )
    store.add_payment(Payment(user_id=STUDENT_ID, course_id=COURSE_ID, session_id="cs_9"))
    body = json.dumps(
        {"id": "evt_9", "type": "checkout.session.completed", "data": {"session_id": "cs_9"}}
    ).encode()
    signature = sign_payload(_SECRET, body)

    with caplog.at_level(logging.DEBUG):
        resp = client.post(
            "/v1/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )
    assert resp.status_code == 200

    all_log_text = " ".join(caplog.messages)
    assert _SECRET not in all_log_text, "Webhook secret found in log output!"
    assert signature not in all_log_text, "Webhook signature found in log output!"
