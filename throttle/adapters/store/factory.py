"""Factory pattern for creating record store instances."""

from throttle.adapters.store.base import AbstractRecordStore
from throttle.adapters.store.in_memory import InMemoryRecordStore
from throttle.adapters.store.supabase import SupabaseRecordStore
from throttle.core.config import StoreSettings, settings
from throttle.core.errors import StoreAppError


def create_record_store(store_settings: StoreSettings | None = None) -> AbstractRecordStore:
    """Instantiate the configured record store backend.

    Args:
        store_settings: Optional override; defaults to ``settings.store``.

    Returns:
        AbstractRecordStore: Ready-to-use store.

    Raises:
        StoreAppError: If the backend is unknown or misses its credentials.
    """
    cfg = store_settings or settings.store

    if cfg.backend == "memory":
        return InMemoryRecordStore()

    if cfg.backend == "supabase":
        if not cfg.supabase_url or not cfg.supabase_service_role_key:
            raise StoreAppError(
                code="store_missing_credentials",
                message="Rate limit store is not configured",
                details={
                    "backend": "supabase",
                    "hint": "Set STORE_SUPABASE_URL and STORE_SUPABASE_SERVICE_ROLE_KEY",
                },
            )
        return SupabaseRecordStore(
            url=cfg.supabase_url,
            service_role_key=cfg.supabase_service_role_key,
            table=cfg.table,
            timeout_seconds=cfg.timeout_seconds,
        )

    raise StoreAppError(
        code="store_unknown_backend",
        message=f"Unknown store backend: '{cfg.backend}'. Supported backends: memory, supabase",
    )
