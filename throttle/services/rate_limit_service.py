"""Fixed-window rate limiting with block extension.

Each (action, identifier) pair owns one record holding the start of its
current window, the attempts counted in it, and an optional block deadline.
``evaluate`` is the pure decision step; ``RateLimitService`` wraps it with
the store round-trips and retries the whole read/decide/write cycle when a
conditional write loses a race.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from throttle.adapters.store.base import AbstractRecordStore, RateLimitRecord
from throttle.core.config import FALLBACK_CATEGORY, RateLimitPolicy
from throttle.core.errors import StoreAppError, ValidationAppError
from throttle.core.logging import hash_identifier

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"
# Keys for the maintenance endpoint guard; never reachable through build_key
GUARD_KEY_PREFIX = "guard"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single check.

    Attributes:
        limited: True when the attempt is denied.
        remaining_attempts: Attempts left in the window (allowed outcomes only).
        retry_after_ms: Milliseconds until the block lifts (denied outcomes only).
    """

    limited: bool
    remaining_attempts: int | None = None
    retry_after_ms: int | None = None

    @classmethod
    def allowed(cls, remaining_attempts: int) -> "RateLimitDecision":
        return cls(limited=False, remaining_attempts=remaining_attempts)

    @classmethod
    def denied(cls, retry_after_ms: int) -> "RateLimitDecision":
        return cls(limited=True, retry_after_ms=retry_after_ms)


@dataclass(frozen=True)
class RateLimitStatus:
    """Read-only view of a key, as seen at ``now``."""

    attempts: int
    is_blocked: bool
    blocked_until_ms: int | None
    remaining_attempts: int


def build_key(action: str, identifier: str) -> str:
    return f"{KEY_PREFIX}:{action}:{identifier}"


def resolve_policy(action: str, policies: Mapping[str, RateLimitPolicy]) -> RateLimitPolicy:
    """Return the policy for ``action``, falling back to the ``api`` policy."""

    return policies.get(action) or policies[FALLBACK_CATEGORY]


def _window_expired(record: RateLimitRecord, policy: RateLimitPolicy, now_ms: int) -> bool:
    return now_ms - record.window_start_ms > policy.window_ms


def evaluate(
    record: RateLimitRecord | None,
    *,
    key: str,
    policy: RateLimitPolicy,
    now_ms: int,
) -> tuple[RateLimitDecision, RateLimitRecord | None]:
    """Decide one attempt against the current record.

    Args:
        record: Stored record, or None for a key never seen before.
        key: Composite record key.
        policy: Limits for the action category.
        now_ms: Current epoch milliseconds.

    Returns:
        Tuple of (decision, record to write). The record is None when nothing
        needs to be written (an active block).
    """
    fresh = RateLimitRecord(key=key, window_start_ms=now_ms, attempts=1)

    if record is None:
        return RateLimitDecision.allowed(policy.max_attempts - 1), fresh

    if record.blocked_until_ms is not None:
        if now_ms < record.blocked_until_ms:
            return RateLimitDecision.denied(record.blocked_until_ms - now_ms), None
        # An elapsed block always opens a new window
        return RateLimitDecision.allowed(policy.max_attempts - 1), fresh

    if _window_expired(record, policy, now_ms):
        return RateLimitDecision.allowed(policy.max_attempts - 1), fresh

    if record.attempts >= policy.max_attempts:
        blocked = record.with_block(now_ms + policy.block_duration_ms)
        return RateLimitDecision.denied(policy.block_duration_ms), blocked

    remaining = policy.max_attempts - record.attempts - 1
    return RateLimitDecision.allowed(remaining), record.with_attempts(record.attempts + 1)


def _require(action: str | None, identifier: str | None) -> tuple[str, str]:
    if not action or not identifier or not action.strip() or not identifier.strip():
        raise ValidationAppError(
            code="missing_fields",
            message="Missing action or identifier",
        )
    return action, identifier


class RateLimitService:
    """Rate limiter over an ``AbstractRecordStore``."""

    def __init__(
        self,
        store: AbstractRecordStore,
        *,
        policies: Mapping[str, RateLimitPolicy],
        clock: Callable[[], float] = time.time,
        max_conflict_retries: int = 3,
    ) -> None:
        """Initialize the service.

        Args:
            store: Backing record store.
            policies: Policy per action category; must contain ``api``.
            clock: Time source returning UNIX time in seconds.
            max_conflict_retries: Extra read/decide/write cycles allowed when a
                conditional write loses a race.

        Raises:
            ValueError: If the fallback policy is missing or retries is negative.
        """
        if FALLBACK_CATEGORY not in policies:
            raise ValueError(f"policies must define the '{FALLBACK_CATEGORY}' category")
        if max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must be >= 0")

        self._store = store
        self._policies = dict(policies)
        self._clock = clock
        self._max_conflict_retries = max_conflict_retries

    @property
    def store(self) -> AbstractRecordStore:
        return self._store

    def policy_for(self, action: str) -> RateLimitPolicy:
        return resolve_policy(action, self._policies)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check(self, action: str | None, identifier: str | None) -> RateLimitDecision:
        """Count one attempt for (action, identifier) and decide whether it may proceed.

        Args:
            action: Action category (signIn, signUp, passwordReset, api, ...).
            identifier: Caller identifier (email, IP, user id).

        Returns:
            RateLimitDecision for this attempt.

        Raises:
            ValidationAppError: If action or identifier is empty.
            StoreAppError: If the store fails or write conflicts persist.
        """
        action, identifier = _require(action, identifier)
        return await self._check_key(action, build_key(action, identifier))

    async def guard(self, caller: str) -> RateLimitDecision:
        """Count one maintenance call for ``caller`` under the ``api`` policy.

        Guard records live under their own key prefix, so public checks can
        neither consume nor reset an operator's budget.
        """
        return await self._check_key(
            FALLBACK_CATEGORY, f"{GUARD_KEY_PREFIX}:{FALLBACK_CATEGORY}:{caller}"
        )

    async def _check_key(self, action: str, key: str) -> RateLimitDecision:
        policy = self.policy_for(action)
        key_hash = hash_identifier(key)

        for cycle in range(self._max_conflict_retries + 1):
            now_ms = self._now_ms()
            record = await self._store.get(key)
            decision, new_record = evaluate(record, key=key, policy=policy, now_ms=now_ms)

            if new_record is None:
                written = True
            elif record is None:
                written = await self._store.insert(new_record)
            else:
                written = await self._store.replace(record, new_record)

            if written:
                self._log_decision(action, key_hash, decision, new_record)
                return decision

            logger.info(
                "rate_limit.write_conflict",
                extra={"action": action, "key_hash": key_hash, "cycle": cycle},
            )

        logger.error(
            "rate_limit.conflicts_exhausted",
            extra={"action": action, "key_hash": key_hash},
        )
        raise StoreAppError(
            code="store_conflict",
            message="Rate limit record kept changing during update",
            details={"attempts": self._max_conflict_retries + 1},
        )

    def _log_decision(
        self,
        action: str,
        key_hash: str,
        decision: RateLimitDecision,
        written: RateLimitRecord | None,
    ) -> None:
        if decision.limited:
            logger.warning(
                "rate_limit.denied",
                extra={
                    "action": action,
                    "key_hash": key_hash,
                    "retry_after_ms": decision.retry_after_ms,
                    "block_started": written is not None,
                },
            )
            return
        logger.info(
            "rate_limit.allowed",
            extra={
                "action": action,
                "key_hash": key_hash,
                "remaining": decision.remaining_attempts,
            },
        )

    async def status(self, action: str | None, identifier: str | None) -> RateLimitStatus:
        """Describe the key without counting an attempt."""

        action, identifier = _require(action, identifier)
        policy = self.policy_for(action)
        record = await self._store.get(build_key(action, identifier))
        now_ms = self._now_ms()

        if record is None:
            return RateLimitStatus(
                attempts=0,
                is_blocked=False,
                blocked_until_ms=None,
                remaining_attempts=policy.max_attempts,
            )

        is_blocked = record.blocked_until_ms is not None and now_ms < record.blocked_until_ms
        if not is_blocked and (
            record.blocked_until_ms is not None or _window_expired(record, policy, now_ms)
        ):
            return RateLimitStatus(
                attempts=0,
                is_blocked=False,
                blocked_until_ms=None,
                remaining_attempts=policy.max_attempts,
            )

        return RateLimitStatus(
            attempts=record.attempts,
            is_blocked=is_blocked,
            blocked_until_ms=record.blocked_until_ms if is_blocked else None,
            remaining_attempts=0 if is_blocked else max(0, policy.max_attempts - record.attempts),
        )

    async def reset(self, action: str | None, identifier: str | None) -> bool:
        """Forget the key, e.g. after a successful sign-in."""

        action, identifier = _require(action, identifier)
        key = build_key(action, identifier)
        removed = await self._store.delete(key)
        logger.info(
            "rate_limit.reset",
            extra={"action": action, "key_hash": hash_identifier(key), "removed": removed},
        )
        return removed

    async def prune(self, older_than_ms: int) -> int:
        """Delete records whose window opened more than ``older_than_ms`` ago.

        Records still serving an active block are kept.
        """
        if older_than_ms < 1:
            raise ValidationAppError(
                code="invalid_prune_age",
                message="olderThanMs must be >= 1",
                details={"field": "olderThanMs"},
            )

        now_ms = self._now_ms()
        deleted = await self._store.prune(
            window_started_before_ms=now_ms - older_than_ms, now_ms=now_ms
        )
        logger.info("rate_limit.pruned", extra={"deleted": deleted, "older_than_ms": older_than_ms})
        return deleted
