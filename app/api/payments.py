"""Payment provider webhook.

The signature is checked against the RAW body before anything is
parsed: re-serialising the JSON would not reproduce the signed bytes.

Status codes tell the provider what to do next:
  200  handled, or a stored outcome that redelivery will not change
  400  malformed payload
  401  bad or missing signature
  503  retryable failure (lock busy, database hiccup); redeliver
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from app.core.config import SETTINGS
from app.repos.fact_store import fact_store
from app.services import payments

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments", tags=["payments"])


class WebhookData(BaseModel):
    session_id: str | None = None
    payment_intent_id: str | None = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: WebhookData


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool
    duplicate: bool = False
    result: dict | None = None


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_webhook_signature: Annotated[str | None, Header()] = None,
) -> WebhookAck:
    body = await request.body()

    if SETTINGS.payment_webhook_secret is not None:
        if not payments.verify_signature(
            SETTINGS.payment_webhook_secret, body, x_webhook_signature
        ):
            logger.warning("Webhook rejected: bad signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )

    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Webhook rejected: malformed payload (%d errors)", e.error_count())
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed webhook payload",
        ) from None

    if event.type == payments.CHECKOUT_COMPLETED:
        if not event.data.session_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="checkout event without session_id",
            )
        outcome = await payments.handle_checkout_completed(
            fact_store,
            event_id=event.id,
            session_id=event.data.session_id,
            payment_intent_id=event.data.payment_intent_id,
        )
    elif event.type == payments.PAYMENT_FAILED:
        if not event.data.payment_intent_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="payment_failed event without payment_intent_id",
            )
        outcome = await payments.handle_payment_failed(
            fact_store, event.id, event.data.payment_intent_id
        )
    else:
        logger.info("Webhook event ignored id=%s type=%s", event.id, event.type)
        return WebhookAck(handled=False)

    return WebhookAck(handled=True, duplicate=outcome.was_duplicate, result=outcome.result)
