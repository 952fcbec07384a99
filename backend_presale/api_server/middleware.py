"""
HTTP middleware — request correlation IDs and timing.

Every request gets an X-Request-ID (client-supplied or generated) bound to all
log lines emitted while it is handled, and echoed on the response.
"""

from __future__ import annotations

import time
import uuid

from fastapi import FastAPI, Request

from backend_presale.logging import bind_request, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def request_context(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    bind_request(request_id=request_id, path=request.url.path, method=request.method)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.debug(
        "api_request_completed",
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


def install_middleware(app: FastAPI) -> None:
    app.middleware("http")(request_context)
