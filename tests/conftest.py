"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any ``throttle`` import so the global
settings object is built from them rather than from a local .env file.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from throttle.adapters.store.in_memory import InMemoryRecordStore
from throttle.core.config import DEFAULT_POLICIES
from throttle.services.rate_limit_service import RateLimitService

START = 1_700_000_000.0


@pytest.fixture
def clock() -> Mock:
    """Frozen UNIX clock (seconds); tests move it by setting return_value."""
    return Mock(return_value=START)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def service(store: InMemoryRecordStore, clock: Mock) -> RateLimitService:
    return RateLimitService(store, policies=DEFAULT_POLICIES, clock=clock)


@pytest.fixture
def app(service: RateLimitService):
    """Fresh app whose routes use the fixture service."""
    from throttle.core.app_factory import create_app
    from throttle.core.rate_limit import get_rate_limit_service

    application = create_app()
    application.dependency_overrides[get_rate_limit_service] = lambda: service
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def api_key_headers() -> dict[str, str]:
    return {"X-API-Key": "test-api-key-123"}
