"""HTTP client for the rate limit check endpoint."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import httpx

from throttle.core.errors import RateLimitClientError
from throttle.core.logging import hash_identifier
from throttle.services.rate_limit_service import RateLimitDecision

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Rate limiting is temporarily unavailable. Please try again later."


@dataclass(frozen=True)
class EnforcementResult:
    allowed: bool
    message: str | None = None


def format_wait_message(retry_after_ms: int) -> str:
    """Render a denial as the message shown next to the sign-in form.

    >>> format_wait_message(900000)
    'Too many attempts. Please try again in 15 minutes.'
    >>> format_wait_message(1)
    'Too many attempts. Please try again in 1 minute.'
    """
    minutes = math.ceil(max(retry_after_ms, 0) / 60000)
    plural = "" if minutes == 1 else "s"
    return f"Too many attempts. Please try again in {minutes} minute{plural}."


class RateLimitClient:
    """Call ``POST /v1/rate-limit`` on a throttle deployment.

    By default a failure to get an answer counts as a denial (fail-closed).
    Pass ``fail_open=True`` to let attempts through when the service is down.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        path: str = "/v1/rate-limit",
        timeout_seconds: float = 5.0,
        fail_open: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._path = path
        self._fail_open = fail_open
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "RateLimitClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def check(self, action: str, identifier: str) -> RateLimitDecision:
        """Ask the service whether one attempt may proceed.

        Raises:
            RateLimitClientError: Transport failure, unexpected status, or a
                body that does not match the contract.
        """
        try:
            response = await self._client.post(
                self._path, json={"action": action, "identifier": identifier}
            )
        except httpx.HTTPError as exc:
            raise RateLimitClientError(
                code="rate_limit_unreachable",
                message="Rate limit service is unreachable",
            ) from exc

        if response.status_code not in (200, 429):
            raise RateLimitClientError(
                code="rate_limit_bad_status",
                message=f"Rate limit service returned HTTP {response.status_code}",
                details={"http_status": response.status_code},
            )

        try:
            data = response.json()
            if data["limited"]:
                return RateLimitDecision.denied(int(data["retryAfterMs"]))
            return RateLimitDecision.allowed(int(data["remainingAttempts"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise RateLimitClientError(
                code="rate_limit_bad_response",
                message="Rate limit service returned an unexpected body",
                details={"http_status": response.status_code},
            ) from exc

    async def enforce(self, action: str, identifier: str) -> EnforcementResult:
        """Check and translate the decision into an allow flag and message."""

        try:
            decision = await self.check(action, identifier)
        except RateLimitClientError as exc:
            logger.warning(
                "rate_limit_client.unavailable",
                extra={
                    "error_code": exc.code,
                    "action": action,
                    "key_hash": hash_identifier(identifier),
                    "fail_open": self._fail_open,
                },
            )
            if self._fail_open:
                return EnforcementResult(allowed=True)
            return EnforcementResult(allowed=False, message=UNAVAILABLE_MESSAGE)

        if decision.limited:
            return EnforcementResult(
                allowed=False,
                message=format_wait_message(decision.retry_after_ms or 0),
            )
        return EnforcementResult(allowed=True)
