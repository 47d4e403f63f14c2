"""Global exception handlers for consistent error responses.

Every error body has the shape ``{"error": <message>, "code": ..., "request_id": ...}``
so web clients can keep reading ``error`` as a plain string.

Design:
- ValidationAppError / request body validation → 400
- AuthenticationAppError → 403
- StoreAppError and any other AppError raised server-side → 500
- HTTPException (guard 429, unknown routes) → its own status, same body shape
- Unexpected Exception → generic 500 (safety net)
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from throttle.core.errors import (
    AppError,
    AuthenticationAppError,
    StoreAppError,
    ValidationAppError,
)
from throttle.core.logging import get_request_id
from throttle.core.middleware import CORS_HEADERS

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    429: "rate_limited",
}


def _status_for(exc: AppError) -> int:
    if isinstance(exc, ValidationAppError):
        return 400
    if isinstance(exc, AuthenticationAppError):
        return 403
    return 500


def _request_id(request: Request) -> str | None:
    # The contextvar is already cleared when ServerErrorMiddleware runs
    return get_request_id() or getattr(request.state, "request_id", None)


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the JSON error body shared by all handlers."""

    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": code, "request_id": _request_id(request)},
        headers={**CORS_HEADERS, **(headers or {})},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Map domain errors to HTTP status codes.

    Store failures are logged at error level and never retried here; the
    caller sees a 500 and the attempt is treated as not allowed.
    """
    status_code = _status_for(exc)

    log = logger.error if isinstance(exc, StoreAppError) or status_code >= 500 else logger.warning
    log(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    return error_response(request, status_code, exc.code, exc.message)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Reshape framework HTTP errors into the shared error body.

    Headers set on the exception (``Retry-After`` on 429) are preserved.
    """
    code = _HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    logger.warning(
        "http_error_handled",
        extra={
            "error_code": code,
            "status_code": exc.status_code,
            "request_path": request.url.path,
        },
    )
    return error_response(request, exc.status_code, code, str(exc.detail), exc.headers)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed bodies (bad JSON, wrong types) as 400 instead of 422."""

    errors = exc.errors()
    logger.warning(
        "request_validation_failed",
        extra={
            "request_path": request.url.path,
            "error_count": len(errors),
            "locations": [".".join(str(part) for part in err.get("loc", ())) for err in errors],
        },
    )
    return error_response(request, 400, "invalid_request", "Invalid request body")


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors.

    Logs the failure for debugging while returning a generic message; no
    exception text or stack trace reaches the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return error_response(
        request,
        500,
        "internal_server_error",
        "An unexpected error occurred. Please try again later.",
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(StarletteHTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(request_validation_handler)
    app.exception_handler(Exception)(general_exception_handler)
