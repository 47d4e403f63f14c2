"""In-memory rate limit record store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import threading

from throttle.adapters.store.base import AbstractRecordStore, RateLimitRecord


class InMemoryRecordStore(AbstractRecordStore):
    """Record store backed by a dict guarded by a re-entrant lock.

    Important:
        State lives in the current process. If the API runs with multiple
        workers (e.g., multiple Uvicorn/Gunicorn workers), each worker keeps
        its own independent counters. Use the supabase backend in that case.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, RateLimitRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    async def get(self, key: str) -> RateLimitRecord | None:
        with self._lock:
            return self._records.get(key)

    async def insert(self, record: RateLimitRecord) -> bool:
        with self._lock:
            if record.key in self._records:
                return False
            self._records[record.key] = record
            return True

    async def replace(self, expected: RateLimitRecord, new: RateLimitRecord) -> bool:
        if expected.key != new.key:
            raise ValueError("replace cannot change the record key")

        with self._lock:
            if self._records.get(expected.key) != expected:
                return False
            self._records[new.key] = new
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    async def prune(self, *, window_started_before_ms: int, now_ms: int) -> int:
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if record.window_start_ms < window_started_before_ms
                and (record.blocked_until_ms is None or record.blocked_until_ms <= now_ms)
            ]
            for key in stale:
                del self._records[key]
            return len(stale)
