"""Unit tests for the fixed-window rate limit service."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from throttle.adapters.store.base import RateLimitRecord
from throttle.adapters.store.in_memory import InMemoryRecordStore
from throttle.core.config import DEFAULT_POLICIES, RateLimitPolicy
from throttle.core.errors import StoreAppError, ValidationAppError
from throttle.services.rate_limit_service import (
    RateLimitDecision,
    RateLimitService,
    build_key,
    evaluate,
    resolve_policy,
)

START_MS = 1_700_000_000_000  # matches the clock fixture


def _advance(clock: Mock, ms: int) -> None:
    clock.return_value = clock.return_value + ms / 1000


class TestEvaluate:
    """The pure decision step."""

    policy = RateLimitPolicy(window_ms=60_000, max_attempts=3, block_duration_ms=120_000)

    def test_first_attempt_creates_record(self) -> None:
        decision, record = evaluate(None, key="k", policy=self.policy, now_ms=START_MS)

        assert decision == RateLimitDecision.allowed(2)
        assert record == RateLimitRecord(key="k", window_start_ms=START_MS, attempts=1)

    def test_increment_within_window(self) -> None:
        current = RateLimitRecord(key="k", window_start_ms=START_MS, attempts=1)

        decision, record = evaluate(current, key="k", policy=self.policy, now_ms=START_MS + 10)

        assert decision.remaining_attempts == 1
        assert record is not None and record.attempts == 2
        assert record.window_start_ms == START_MS

    def test_active_block_writes_nothing(self) -> None:
        current = RateLimitRecord(
            key="k", window_start_ms=START_MS, attempts=3, blocked_until_ms=START_MS + 5_000
        )

        decision, record = evaluate(current, key="k", policy=self.policy, now_ms=START_MS + 1_000)

        assert decision == RateLimitDecision.denied(4_000)
        assert record is None

    def test_limit_reached_starts_block(self) -> None:
        current = RateLimitRecord(key="k", window_start_ms=START_MS, attempts=3)

        decision, record = evaluate(current, key="k", policy=self.policy, now_ms=START_MS + 10)

        assert decision == RateLimitDecision.denied(120_000)
        assert record is not None
        assert record.blocked_until_ms == START_MS + 10 + 120_000
        assert record.attempts == 3

    def test_window_boundary_is_inclusive(self) -> None:
        current = RateLimitRecord(key="k", window_start_ms=START_MS, attempts=2)

        _, record = evaluate(current, key="k", policy=self.policy, now_ms=START_MS + 60_000)

        assert record is not None and record.attempts == 3

    def test_expired_window_resets(self) -> None:
        current = RateLimitRecord(key="k", window_start_ms=START_MS, attempts=2)

        decision, record = evaluate(current, key="k", policy=self.policy, now_ms=START_MS + 60_001)

        assert decision.remaining_attempts == 2
        assert record == RateLimitRecord(key="k", window_start_ms=START_MS + 60_001, attempts=1)

    def test_elapsed_block_resets_even_inside_window(self) -> None:
        policy = RateLimitPolicy(window_ms=600_000, max_attempts=3, block_duration_ms=1_000)
        current = RateLimitRecord(
            key="k", window_start_ms=START_MS, attempts=3, blocked_until_ms=START_MS + 1_000
        )

        decision, record = evaluate(current, key="k", policy=policy, now_ms=START_MS + 1_000)

        assert decision.limited is False
        assert record is not None
        assert record.attempts == 1
        assert record.blocked_until_ms is None


def test_build_key_uses_requested_action() -> None:
    assert build_key("signIn", "u1") == "rate_limit:signIn:u1"
    assert build_key("unknown", "u1") == "rate_limit:unknown:u1"


def test_resolve_policy_falls_back_to_api() -> None:
    assert resolve_policy("nope", DEFAULT_POLICIES) == DEFAULT_POLICIES["api"]
    assert resolve_policy("signUp", DEFAULT_POLICIES) == DEFAULT_POLICIES["signUp"]


class TestCheck:
    """Behaviour of RateLimitService.check over the in-memory store."""

    @pytest.mark.asyncio
    async def test_sign_in_scenario(self, service: RateLimitService) -> None:
        for attempt in range(1, 6):
            decision = await service.check("signIn", "u1")
            assert decision.limited is False, f"attempt {attempt} should be allowed"
            assert decision.remaining_attempts == 5 - attempt

        denied = await service.check("signIn", "u1")
        assert denied.limited is True
        assert denied.retry_after_ms == 900_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["signIn", "signUp", "passwordReset", "api"])
    async def test_attempt_after_max_is_denied(self, service: RateLimitService, action: str) -> None:
        policy = DEFAULT_POLICIES[action]

        for _ in range(policy.max_attempts):
            assert (await service.check(action, "someone")).limited is False

        denied = await service.check(action, "someone")
        assert denied.limited is True
        assert denied.retry_after_ms == policy.block_duration_ms

    @pytest.mark.asyncio
    async def test_retry_after_does_not_increase_while_blocked(
        self, service: RateLimitService, clock: Mock
    ) -> None:
        for _ in range(4):
            await service.check("signUp", "u1")

        previous = (await service.check("signUp", "u1")).retry_after_ms
        assert previous == 30 * 60 * 1000

        for step in (0, 1_000, 60_000, 600_000):
            _advance(clock, step)
            decision = await service.check("signUp", "u1")
            assert decision.limited is True
            assert decision.retry_after_ms is not None
            assert decision.retry_after_ms <= previous
            previous = decision.retry_after_ms

    @pytest.mark.asyncio
    async def test_block_elapsed_allows_and_resets_counter(
        self, service: RateLimitService, store: InMemoryRecordStore, clock: Mock
    ) -> None:
        for _ in range(6):
            await service.check("signIn", "u1")

        _advance(clock, 900_000)
        decision = await service.check("signIn", "u1")

        assert decision.limited is False
        assert decision.remaining_attempts == 4
        record = await store.get(build_key("signIn", "u1"))
        assert record is not None
        assert record.attempts == 1
        assert record.blocked_until_ms is None

    @pytest.mark.asyncio
    async def test_window_elapsed_resets_counter(
        self, service: RateLimitService, store: InMemoryRecordStore, clock: Mock
    ) -> None:
        for _ in range(4):
            await service.check("signIn", "u1")

        _advance(clock, 901_000)
        decision = await service.check("signIn", "u1")

        assert decision == RateLimitDecision.allowed(4)
        record = await store.get(build_key("signIn", "u1"))
        assert record is not None and record.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_action_uses_api_policy(self, service: RateLimitService) -> None:
        first = await service.check("exportDeals", "u1")
        assert first.remaining_attempts == 29

        for _ in range(29):
            assert (await service.check("exportDeals", "u1")).limited is False

        denied = await service.check("exportDeals", "u1")
        assert denied.limited is True
        assert denied.retry_after_ms == 5 * 60 * 1000

    @pytest.mark.asyncio
    async def test_identifiers_and_actions_are_isolated(self, service: RateLimitService) -> None:
        for _ in range(3):
            await service.check("passwordReset", "a@example.com")
        assert (await service.check("passwordReset", "a@example.com")).limited is True

        assert (await service.check("passwordReset", "b@example.com")).limited is False
        assert (await service.check("signIn", "a@example.com")).limited is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("action", "identifier"),
        [("", "u1"), ("signIn", ""), (None, "u1"), ("signIn", None), ("  ", "u1")],
    )
    async def test_missing_fields_raise_validation_error(
        self, service: RateLimitService, action, identifier
    ) -> None:
        with pytest.raises(ValidationAppError) as exc_info:
            await service.check(action, identifier)

        assert exc_info.value.message == "Missing action or identifier"


class TestGuard:
    @pytest.mark.asyncio
    async def test_guard_applies_api_policy(self, service: RateLimitService) -> None:
        for _ in range(30):
            assert (await service.guard("ip:10.0.0.1")).limited is False

        decision = await service.guard("ip:10.0.0.1")

        assert decision.limited is True
        assert decision.retry_after_ms == 300_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identifier", ["ip:10.0.0.1", "guard:ip:10.0.0.1", "guard:api:ip:10.0.0.1"])
    async def test_guard_keys_are_unreachable_from_check(
        self, service: RateLimitService, store: InMemoryRecordStore, identifier: str
    ) -> None:
        for _ in range(31):
            await service.check("api", identifier)

        assert (await service.guard("ip:10.0.0.1")).remaining_attempts == 29
        assert await store.get("guard:api:ip:10.0.0.1") is not None


class _RacingStore(InMemoryRecordStore):
    """Store where another writer sneaks in before each of our writes."""

    def __init__(self, races: int) -> None:
        super().__init__()
        self.races = races
        self.writes = 0

    async def _interfere(self, key: str) -> bool:
        if self.races <= 0:
            return False
        self.races -= 1
        current = await self.get(key)
        if current is None:
            await super().insert(RateLimitRecord(key=key, window_start_ms=START_MS, attempts=1))
        else:
            await super().replace(current, current.with_attempts(current.attempts + 1))
        return True

    async def insert(self, record: RateLimitRecord) -> bool:
        if await self._interfere(record.key):
            return await super().insert(record)
        self.writes += 1
        return await super().insert(record)

    async def replace(self, expected: RateLimitRecord, new: RateLimitRecord) -> bool:
        if await self._interfere(new.key):
            return await super().replace(expected, new)
        self.writes += 1
        return await super().replace(expected, new)


class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_lost_race_is_re_evaluated(self, clock: Mock) -> None:
        store = _RacingStore(races=1)
        service = RateLimitService(store, policies=DEFAULT_POLICIES, clock=clock)

        decision = await service.check("signIn", "u1")

        # The competing writer's attempt is counted too
        assert decision.remaining_attempts == 3
        record = await store.get(build_key("signIn", "u1"))
        assert record is not None and record.attempts == 2

    @pytest.mark.asyncio
    async def test_persistent_conflicts_raise_store_error(self, clock: Mock) -> None:
        store = _RacingStore(races=10)
        service = RateLimitService(
            store, policies=DEFAULT_POLICIES, clock=clock, max_conflict_retries=2
        )

        with pytest.raises(StoreAppError) as exc_info:
            await service.check("signIn", "u1")

        assert exc_info.value.code == "store_conflict"
        assert store.writes == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_status_of_unknown_key(self, service: RateLimitService) -> None:
        status = await service.status("signIn", "nobody")

        assert status.attempts == 0
        assert status.is_blocked is False
        assert status.remaining_attempts == 5

    @pytest.mark.asyncio
    async def test_status_does_not_count(self, service: RateLimitService) -> None:
        await service.check("signIn", "u1")
        await service.status("signIn", "u1")
        status = await service.status("signIn", "u1")

        assert status.attempts == 1
        assert status.remaining_attempts == 4

    @pytest.mark.asyncio
    async def test_status_while_blocked(self, service: RateLimitService) -> None:
        for _ in range(6):
            await service.check("signIn", "u1")

        status = await service.status("signIn", "u1")

        assert status.is_blocked is True
        assert status.blocked_until_ms == START_MS + 900_000
        assert status.remaining_attempts == 0

    @pytest.mark.asyncio
    async def test_status_after_window_expired(self, service: RateLimitService, clock: Mock) -> None:
        await service.check("signIn", "u1")
        _advance(clock, 901_000)

        status = await service.status("signIn", "u1")

        assert status.attempts == 0
        assert status.remaining_attempts == 5

    @pytest.mark.asyncio
    async def test_reset_clears_block(self, service: RateLimitService) -> None:
        for _ in range(6):
            await service.check("signIn", "u1")

        assert await service.reset("signIn", "u1") is True
        assert await service.reset("signIn", "u1") is False
        assert (await service.check("signIn", "u1")).remaining_attempts == 4

    @pytest.mark.asyncio
    async def test_prune_keeps_recent_and_blocked(
        self, service: RateLimitService, store: InMemoryRecordStore, clock: Mock
    ) -> None:
        await service.check("signIn", "old")
        for _ in range(4):
            await service.check("signUp", "blocked")
        _advance(clock, 20 * 60 * 1000)
        await service.check("signIn", "recent")

        deleted = await service.prune(10 * 60 * 1000)

        assert deleted == 1
        assert await store.get(build_key("signIn", "old")) is None
        assert await store.get(build_key("signUp", "blocked")) is not None
        assert await store.get(build_key("signIn", "recent")) is not None

    @pytest.mark.asyncio
    async def test_prune_rejects_non_positive_age(self, service: RateLimitService) -> None:
        with pytest.raises(ValidationAppError):
            await service.prune(0)


def test_constructor_requires_fallback_policy(store: InMemoryRecordStore) -> None:
    policies = {"signIn": DEFAULT_POLICIES["signIn"]}

    with pytest.raises(ValueError):
        RateLimitService(store, policies=policies)


def test_constructor_rejects_negative_retries(store: InMemoryRecordStore) -> None:
    with pytest.raises(ValueError):
        RateLimitService(store, policies=DEFAULT_POLICIES, max_conflict_retries=-1)
