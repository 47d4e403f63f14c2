"""HTTP middleware for request correlation and cross-origin headers.

``request_id_middleware``:
- Accepts the incoming X-Request-ID header or generates a UUID
- Stores request_id in contextvars for log correlation, and on
  ``request.state`` for error handlers that run after the context is cleared
- Echoes it back with the total request duration

``cors_middleware``:
- Answers every preflight ``OPTIONS`` request with ``ok``
- Stamps the permissive CORS headers on every response, including errors,
  which browser callers of the sign-in flow need to read 429 bodies

Usage:
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(cors_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from throttle.core.config import settings
from throttle.core.logging import clear_request_id, set_request_id

CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


async def request_id_middleware(request: Request, call_next) -> Response:
    """Generate or propagate the request correlation id.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with X-Request-ID and
            X-Request-Duration-ms headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def cors_middleware(request: Request, call_next) -> Response:
    """Short-circuit preflight requests and add CORS headers to responses."""

    if request.method == "OPTIONS":
        return PlainTextResponse("ok", headers=CORS_HEADERS)

    response: Response = await call_next(request)
    for name, value in CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response
