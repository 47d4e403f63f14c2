"""Supabase (PostgREST) record store.

Talks to the ``rate_limits`` table through the project's REST endpoint using
the service role key. Conditional writes rely on PostgREST semantics:

- insert: ``POST`` against a UNIQUE ``key`` column answers 409 on conflict
- replace: ``PATCH`` filtered on every column of the expected row returns the
  updated rows; an empty list means another writer got there first
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from throttle.adapters.store.base import AbstractRecordStore, RateLimitRecord
from throttle.core.errors import StoreAppError
from throttle.core.logging import hash_identifier

logger = logging.getLogger(__name__)

_COLUMNS = "key,window_start,attempts,blocked_until"


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MS = timedelta(milliseconds=1)


def to_iso(epoch_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with ms precision."""

    dt = _EPOCH + epoch_ms * _MS
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_iso(value: str) -> int:
    """Parse a PostgREST timestamptz string into epoch milliseconds."""

    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // _MS


def _row_to_record(row: dict[str, Any]) -> RateLimitRecord:
    blocked_until = row.get("blocked_until")
    return RateLimitRecord(
        key=row["key"],
        window_start_ms=from_iso(row["window_start"]),
        attempts=int(row["attempts"]),
        blocked_until_ms=from_iso(blocked_until) if blocked_until else None,
    )


def _record_to_row(record: RateLimitRecord) -> dict[str, Any]:
    return {
        "key": record.key,
        "window_start": to_iso(record.window_start_ms),
        "attempts": record.attempts,
        "blocked_until": (
            to_iso(record.blocked_until_ms) if record.blocked_until_ms is not None else None
        ),
    }


def _match_filters(record: RateLimitRecord) -> dict[str, str]:
    """PostgREST filters matching exactly the given record."""

    filters = {
        "key": f"eq.{record.key}",
        "window_start": f"eq.{to_iso(record.window_start_ms)}",
        "attempts": f"eq.{record.attempts}",
    }
    if record.blocked_until_ms is None:
        filters["blocked_until"] = "is.null"
    else:
        filters["blocked_until"] = f"eq.{to_iso(record.blocked_until_ms)}"
    return filters


class SupabaseRecordStore(AbstractRecordStore):
    """Record store backed by a Supabase table via PostgREST."""

    def __init__(
        self,
        *,
        url: str,
        service_role_key: str,
        table: str = "rate_limits",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the REST client.

        Args:
            url: Supabase project URL.
            service_role_key: Key sent as ``apikey`` and bearer token.
            table: Table holding rate limit rows.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (used by tests).
        """
        self._table = table
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_role_key,
                "Authorization": f"Bearer {service_role_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
        allowed_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, f"/{self._table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.error(
                "store.unreachable",
                extra={"method": method, "error_type": type(exc).__name__},
            )
            raise StoreAppError(
                code="store_unreachable",
                message="Rate limit store is unreachable",
                details={"backend": "supabase"},
            ) from exc

        if response.status_code in allowed_statuses:
            return response

        if response.is_error:
            logger.error(
                "store.bad_status",
                extra={"method": method, "http_status": response.status_code},
            )
            raise StoreAppError(
                code="store_bad_status",
                message=f"Rate limit store returned HTTP {response.status_code}",
                details={"backend": "supabase", "http_status": response.status_code},
            )
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict[str, Any]]:
        try:
            rows = response.json()
        except ValueError as exc:
            raise StoreAppError(
                code="store_bad_response",
                message="Rate limit store returned a non-JSON body",
                details={"backend": "supabase"},
            ) from exc
        if not isinstance(rows, list):
            raise StoreAppError(
                code="store_bad_response",
                message="Rate limit store returned an unexpected payload",
                details={"backend": "supabase"},
            )
        return rows

    async def get(self, key: str) -> RateLimitRecord | None:
        response = await self._request(
            "GET",
            params={"select": _COLUMNS, "key": f"eq.{key}", "limit": "1"},
        )
        rows = self._rows(response)
        if not rows:
            return None
        try:
            return _row_to_record(rows[0])
        except (KeyError, TypeError, ValueError) as exc:
            raise StoreAppError(
                code="store_bad_response",
                message="Rate limit row is malformed",
                details={"backend": "supabase"},
            ) from exc

    async def insert(self, record: RateLimitRecord) -> bool:
        response = await self._request(
            "POST",
            json=_record_to_row(record),
            prefer="return=minimal",
            allowed_statuses=(409,),
        )
        if response.status_code == 409:
            logger.info("store.insert_conflict", extra={"key_hash": hash_identifier(record.key)})
            return False
        return True

    async def replace(self, expected: RateLimitRecord, new: RateLimitRecord) -> bool:
        if expected.key != new.key:
            raise ValueError("replace cannot change the record key")

        row = _record_to_row(new)
        del row["key"]
        response = await self._request(
            "PATCH",
            params=_match_filters(expected),
            json=row,
            prefer="return=representation",
        )
        updated = self._rows(response)
        if not updated:
            logger.info("store.replace_conflict", extra={"key_hash": hash_identifier(new.key)})
            return False
        return True

    async def delete(self, key: str) -> bool:
        response = await self._request(
            "DELETE",
            params={"key": f"eq.{key}", "select": "key"},
            prefer="return=representation",
        )
        return bool(self._rows(response))

    async def prune(self, *, window_started_before_ms: int, now_ms: int) -> int:
        response = await self._request(
            "DELETE",
            params={
                "select": "key",
                "window_start": f"lt.{to_iso(window_started_before_ms)}",
                "or": f'(blocked_until.is.null,blocked_until.lte."{to_iso(now_ms)}")',
            },
            prefer="return=representation",
        )
        return len(self._rows(response))

    async def close(self) -> None:
        await self._client.aclose()
