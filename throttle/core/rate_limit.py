"""Rate limit service wiring for FastAPI routes.

This module owns the process-wide ``RateLimitService`` and exposes it as a
dependency. It also provides ``enforce_rate_limit``, which applies the
service's own ``api`` policy to the maintenance endpoints so they cannot be
hammered either.

Guard strategy:
- Keyed per API key (hashed) when one is presented.
- Falls back to the client IP when auth is disabled.
"""

from __future__ import annotations

import logging
import math
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from throttle.adapters.store.factory import create_record_store
from throttle.core.config import settings
from throttle.core.logging import hash_identifier
from throttle.services.rate_limit_service import RateLimitService

logger = logging.getLogger(__name__)


_service: RateLimitService | None = None


def get_rate_limit_service() -> RateLimitService:
    """Return the process-wide rate limit service.

    The instance is cached in-module so the memory backend keeps its state
    across requests and the supabase backend reuses one HTTP client.
    """

    global _service

    if _service is None:
        _service = RateLimitService(
            create_record_store(settings.store),
            policies=settings.rate_limit.policies,
            max_conflict_retries=settings.store.max_conflict_retries,
        )
        logger.info(
            "rate_limit.service_created",
            extra={
                "backend": settings.store.backend,
                "categories": sorted(settings.rate_limit.policies),
            },
        )

    return _service


async def close_rate_limit_service() -> None:
    """Close the cached service's store and drop the instance."""

    global _service

    if _service is not None:
        await _service.store.close()
        _service = None


def _guard_caller(request: Request, x_api_key: str | None) -> str:
    if x_api_key:
        return f"api_key:{hash_identifier(x_api_key)}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


async def enforce_rate_limit(
    request: Request,
    service: Annotated[RateLimitService, Depends(get_rate_limit_service)],
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency applying the ``api`` policy to the caller.

    Raises:
        HTTPException: 429 Too Many Requests when the caller is blocked.
    """

    if not settings.app.guard_enabled:
        return

    caller = _guard_caller(request, x_api_key)
    decision = await service.guard(caller)
    if not decision.limited:
        return

    retry_after_ms = decision.retry_after_ms or 0
    logger.warning(
        "rate_limit.guard_exceeded",
        extra={
            "key_type": caller.split(":")[0],
            "request_path": request.url.path,
            "retry_after_ms": retry_after_ms,
        },
    )

    headers: dict[str, str] = {}
    if settings.app.include_headers:
        headers["Retry-After"] = str(math.ceil(retry_after_ms / 1000))

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )
