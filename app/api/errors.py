"""HTTP mapping for the enrollment error taxonomy.

Routes raise domain errors and let these handlers pick the status:

  NotFoundError             404
  ConflictError             409
  retryable (any subclass)  503 + Retry-After   "please try again"
  DatabaseError (terminal)  500
  InconsistentStateError    500   write committed, reconciliation pending

Body shape is the same everywhere:
  {"error": "<code>", "detail": "<message>", "retryable": <bool>}
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.core.errors import (
    ConflictError,
    EnrollmentError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 2


def error_body(exc: EnrollmentError) -> dict:
    detail = "Temporarily unavailable, please try again" if exc.retryable else exc.message
    return {"error": exc.code, "detail": detail, "retryable": exc.retryable}


def status_for(exc: EnrollmentError) -> int:
    if exc.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
    code = status_for(exc)
    if exc.retryable:
        logger.warning(
            "Retryable failure on %s %s: %s", request.method, request.url.path, exc.message
        )
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    else:
        if code >= 500:
            logger.error(
                "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
            )
        headers = None
    return JSONResponse(status_code=code, content=error_body(exc), headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EnrollmentError, _enrollment_error_handler)  # type: ignore[arg-type]
