"""Request ID and access log for every request.

A request ID is taken from X-Request-ID (when the caller sends a sane
one) or generated, stored in a ContextVar, and stamped onto every log
record emitted while the request runs.  An approval that enrolls,
verifies and deletes a request logs from three modules; the shared ID
ties those lines together.

The payment provider sends its own delivery ID in X-Request-ID, so a
webhook retry can be matched to the provider's dashboard.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Printable token, bounded: the value ends up in every log line
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


_base_record_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs) -> logging.LogRecord:
    # Record factory, not a root filter: filters on the root logger never
    # see records propagated from child loggers
    record = _base_record_factory(*args, **kwargs)
    record.request_id = request_id_var.get()  # type: ignore[attr-defined]
    return record


if getattr(_base_record_factory, "__name__", "") != "_record_factory":
    logging.setLogRecordFactory(_record_factory)


def resolve_request_id(header_value: str | None) -> str:
    if header_value and _VALID_REQUEST_ID.match(header_value):
        return header_value
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign the request ID, log one summary line, echo the ID back."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = resolve_request_id(request.headers.get("x-request-id"))
        token = request_id_var.set(req_id)
        try:
            start = time.monotonic()
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            logger.info(
                "%s %s → %d (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            response.headers["X-Request-ID"] = req_id
            return response
        finally:
            request_id_var.reset(token)
