"""Middleware that assigns and propagates request correlation identifiers.

Every incoming HTTP request gets a request id, read from the ``X-Request-ID``
header when the caller provides one and generated otherwise. The caller's
``X-User-ID`` and ``X-Order-ID`` headers are captured as well. The values
are stored on ``request.state`` and in context variables so code running
downstream (log filters, HTTP adapters) can read them without passing them
explicitly.

Behavior contract:
- A client supplied ``X-Request-ID`` is reused; otherwise a UUIDv4 is used.
- ``X-User-ID`` defaults to ``anonymous``.
- The response always carries the request id in ``X-Request-ID``.
- Bodies whose declared length exceeds ``api_max_bytes`` are rejected with
  HTTP 413 before reaching a view.
"""

import contextvars
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
USER_ID_CTX = contextvars.ContextVar("user_id", default="-")
ORDER_ID_CTX = contextvars.ContextVar("order_id", default="-")

REQUEST_ID_HEADER = "X-Request-ID"
USER_ID_HEADER = "X-User-ID"
ORDER_ID_HEADER = "X-Order-ID"
ANONYMOUS = "anonymous"


def correlation_headers(order_id: str | None = None) -> dict[str, str]:
    """Headers to forward on outbound calls for the current request.

    Args:
        order_id: Order being processed; overrides the inbound ``X-Order-ID``.

    Returns:
        dict: Only the headers that have a value.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers[REQUEST_ID_HEADER] = rid
    uid = USER_ID_CTX.get()
    if uid and uid != "-":
        headers[USER_ID_HEADER] = uid
    oid = order_id or ORDER_ID_CTX.get()
    if oid and oid != "-":
        headers[ORDER_ID_HEADER] = oid
    return headers


def install_request_context(app: FastAPI, logger: logging.Logger, max_bytes: int) -> None:
    """Register the correlation and size-limit middleware on ``app``."""

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        clen = request.headers.get("content-length")
        if clen and clen.isdigit() and int(clen) > max_bytes:
            return JSONResponse({"error": "Payload too large", "code": "PAYLOAD_TOO_LARGE"}, status_code=413)

        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        uid = request.headers.get(USER_ID_HEADER) or ANONYMOUS
        request.state.request_id = rid
        request.state.user_id = uid
        REQUEST_ID_CTX.set(rid)
        USER_ID_CTX.set(uid)
        ORDER_ID_CTX.set(request.headers.get(ORDER_ID_HEADER) or "-")

        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            logger.info(
                "request handled",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status": status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        response.headers[REQUEST_ID_HEADER] = rid
        return response
