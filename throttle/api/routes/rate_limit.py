"""Rate limit HTTP endpoints.

``POST /v1/rate-limit`` is the decision contract consumed by the sign-in,
sign-up and password-reset flows; it is also served at ``POST /`` so callers
of the former edge function keep working. The remaining endpoints are
maintenance operations behind API key auth and the ``api`` policy guard.
"""

from __future__ import annotations

import math
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from throttle.core.auth import verify_api_key
from throttle.core.config import settings
from throttle.core.rate_limit import enforce_rate_limit, get_rate_limit_service
from throttle.schemas.rate_limit import (
    CheckAllowedResponse,
    CheckDeniedResponse,
    CheckRequest,
    ErrorResponse,
    PruneRequest,
    PruneResponse,
    ResetResponse,
    StatusResponse,
)
from throttle.services.rate_limit_service import RateLimitService

router = APIRouter(tags=["Rate limit"])
compat_router = APIRouter(tags=["Rate limit"], include_in_schema=False)

ServiceDep = Annotated[RateLimitService, Depends(get_rate_limit_service)]

_maintenance = [Depends(verify_api_key), Depends(enforce_rate_limit)]

_check_responses = {
    429: {"model": CheckDeniedResponse, "description": "Attempt denied"},
    400: {"model": ErrorResponse, "description": "Missing action or identifier"},
    500: {"model": ErrorResponse, "description": "Record store failure"},
}


async def _check(body: CheckRequest, service: RateLimitService) -> JSONResponse:
    decision = await service.check(body.action, body.identifier)

    if not decision.limited:
        allowed = CheckAllowedResponse(remaining_attempts=decision.remaining_attempts)
        return JSONResponse(content=allowed.model_dump(by_alias=True))

    retry_after_ms = decision.retry_after_ms or 0
    denied = CheckDeniedResponse(retry_after_ms=retry_after_ms)
    headers = None
    if settings.app.include_headers:
        headers = {"Retry-After": str(math.ceil(retry_after_ms / 1000))}
    return JSONResponse(
        status_code=429,
        content=denied.model_dump(by_alias=True),
        headers=headers,
    )


@router.post(
    "/rate-limit",
    response_model=CheckAllowedResponse,
    responses=_check_responses,
)
async def check_rate_limit(body: CheckRequest, service: ServiceDep) -> JSONResponse:
    """Count one attempt for (action, identifier) and return the decision.

    Returns 200 ``{limited: false, remainingAttempts}`` when allowed and
    429 ``{limited: true, retryAfterMs}`` when denied.
    """
    return await _check(body, service)


@compat_router.post("/")
async def check_rate_limit_root(body: CheckRequest, service: ServiceDep) -> JSONResponse:
    return await _check(body, service)


@router.get(
    "/rate-limit/status",
    response_model=StatusResponse,
    response_model_by_alias=True,
    dependencies=_maintenance,
)
async def rate_limit_status(
    service: ServiceDep,
    action: Annotated[str | None, Query()] = None,
    identifier: Annotated[str | None, Query()] = None,
) -> StatusResponse:
    """Inspect a key without counting an attempt."""
    status = await service.status(action, identifier)
    return StatusResponse(
        attempts=status.attempts,
        is_blocked=status.is_blocked,
        blocked_until_ms=status.blocked_until_ms,
        remaining_attempts=status.remaining_attempts,
    )


@router.post(
    "/rate-limit/reset",
    response_model=ResetResponse,
    dependencies=_maintenance,
)
async def reset_rate_limit(body: CheckRequest, service: ServiceDep) -> ResetResponse:
    """Forget a key, typically right after a successful sign-in."""
    removed = await service.reset(body.action, body.identifier)
    return ResetResponse(reset=removed)


@router.post(
    "/rate-limit/prune",
    response_model=PruneResponse,
    dependencies=_maintenance,
)
async def prune_rate_limits(body: PruneRequest, service: ServiceDep) -> PruneResponse:
    """Delete records whose window opened more than ``olderThanMs`` ago."""
    deleted = await service.prune(body.older_than_ms)
    return PruneResponse(deleted=deleted)
