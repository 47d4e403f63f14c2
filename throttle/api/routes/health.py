from __future__ import annotations

from fastapi import APIRouter

from throttle.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness probe; reports which record store backend is configured."""

    return {"status": "ok", "store": settings.store.backend}
