"""Async client for callers of the rate limit service.

Sign-in, sign-up and password-reset handlers use ``RateLimitClient.enforce``
to turn a decision into an allow flag plus a user-facing message.
"""

from throttle.client.http_client import EnforcementResult, RateLimitClient, format_wait_message

__all__ = ["EnforcementResult", "RateLimitClient", "format_wait_message"]
