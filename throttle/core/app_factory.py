from __future__ import annotations

"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build isolated instances.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from throttle.api.routes import health_router, rate_limit_compat_router, rate_limit_router
from throttle.core.config import settings
from throttle.core.exception_handlers import setup_exception_handlers
from throttle.core.logging import configure_logging
from throttle.core.middleware import cors_middleware, request_id_middleware
from throttle.core.openapi import apply_openapi_customizations
from throttle.core.rate_limit import close_rate_limit_service, get_rate_limit_service


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Build the store up front so a misconfigured backend stops startup
    get_rate_limit_service()
    yield
    await close_rate_limit_service()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Throttle",
        description=(
            "Fixed-window rate limiting for sign-in, sign-up, password reset and "
            "generic API actions. Counters live in a shared record store; once a "
            "key exceeds its category's limit it is blocked for a fixed duration."
        ),
        version="0.1.0",
        debug=settings.app.debug,
        lifespan=_lifespan,
    )

    # Last registered runs first: CORS wraps request-id
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(cors_middleware)

    setup_exception_handlers(app)

    app.include_router(rate_limit_router, prefix="/v1")
    app.include_router(health_router)
    app.include_router(rate_limit_compat_router)

    apply_openapi_customizations(app)

    return app
