"""Record store interfaces.

Writes are expressed as conditional operations (insert-if-absent and
replace-if-unchanged) so callers never need a separate read/write pair to stay
consistent under concurrent requests for the same key.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class RateLimitRecord:
    """Stored state for one (action, identifier) key.

    Attributes:
        key: Composite key ``rate_limit:{action}:{identifier}``.
        window_start_ms: Epoch milliseconds when the current window opened.
        attempts: Attempts counted in the current window.
        blocked_until_ms: Epoch milliseconds until which the key is blocked.
    """

    key: str
    window_start_ms: int
    attempts: int
    blocked_until_ms: int | None = None

    def with_attempts(self, attempts: int) -> "RateLimitRecord":
        return replace(self, attempts=attempts)

    def with_block(self, blocked_until_ms: int) -> "RateLimitRecord":
        return replace(self, blocked_until_ms=blocked_until_ms)


class AbstractRecordStore(ABC):
    """Interface for rate limit record stores."""

    @abstractmethod
    async def get(self, key: str) -> RateLimitRecord | None:
        """Return the record for ``key`` or None when absent."""
        raise NotImplementedError

    @abstractmethod
    async def insert(self, record: RateLimitRecord) -> bool:
        """Create ``record`` if its key is absent.

        Returns:
            False when another writer created the key first.
        """
        raise NotImplementedError

    @abstractmethod
    async def replace(self, expected: RateLimitRecord, new: RateLimitRecord) -> bool:
        """Overwrite the stored record only if it still equals ``expected``.

        Returns:
            False when the stored record changed (or vanished) since it was read.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete the record for ``key``. Returns whether one existed."""
        raise NotImplementedError

    @abstractmethod
    async def prune(self, *, window_started_before_ms: int, now_ms: int) -> int:
        """Delete stale records.

        A record is stale when its window opened before
        ``window_started_before_ms`` and it carries no block active at ``now_ms``.

        Returns:
            Number of deleted records.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources (connections, clients)."""
        return None
