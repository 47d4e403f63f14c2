"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


MINUTE_MS = 60 * 1000

FALLBACK_CATEGORY = "api"


class RateLimitPolicy(BaseModel):
    """Limits applied to one action category.

    Attributes:
        window_ms: Length of the fixed counting window.
        max_attempts: Attempts allowed inside one window.
        block_duration_ms: How long a key stays blocked once it exceeds the limit.
    """

    window_ms: int = Field(..., ge=1)
    max_attempts: int = Field(..., ge=1)
    block_duration_ms: int = Field(..., ge=1)


DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    "signIn": RateLimitPolicy(
        window_ms=15 * MINUTE_MS, max_attempts=5, block_duration_ms=15 * MINUTE_MS
    ),
    "signUp": RateLimitPolicy(
        window_ms=10 * MINUTE_MS, max_attempts=3, block_duration_ms=30 * MINUTE_MS
    ),
    "passwordReset": RateLimitPolicy(
        window_ms=5 * MINUTE_MS, max_attempts=3, block_duration_ms=10 * MINUTE_MS
    ),
    FALLBACK_CATEGORY: RateLimitPolicy(
        window_ms=1 * MINUTE_MS, max_attempts=30, block_duration_ms=5 * MINUTE_MS
    ),
}


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_store_settings() -> "StoreSettings":
    """Build record store settings from environment."""

    return StoreSettings()  # type: ignore[call-arg]


def _build_policy_settings() -> "PolicySettings":
    """Build rate limit policy settings from environment."""

    return PolicySettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    """Build logging settings from environment."""

    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required on maintenance endpoints",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )
    guard_enabled: bool = Field(
        True,
        description="Apply the 'api' policy to maintenance endpoints (per API key or IP)",
    )
    include_headers: bool = Field(
        True,
        description="Include the Retry-After header on 429 responses",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class StoreSettings(BaseSettings):
    """Backing record store configuration.

    The ``memory`` backend keeps records in-process; ``supabase`` talks to the
    hosted PostgREST endpoint of the ``rate_limits`` table.
    """

    backend: Literal["memory", "supabase"] = Field(
        "memory",
        description="Record store backend",
    )
    supabase_url: str | None = Field(
        None,
        description="Base URL of the Supabase project (e.g. https://xyz.supabase.co)",
    )
    supabase_service_role_key: str | None = Field(
        None,
        description="Service role key used for both apikey and bearer auth",
    )
    table: str = Field(
        "rate_limits",
        description="Table holding rate limit records",
    )
    timeout_seconds: float = Field(
        10.0,
        description="Request timeout in seconds",
        gt=0,
    )
    max_conflict_retries: int = Field(
        3,
        description="Re-reads allowed when a conditional write loses a race",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class PolicySettings(BaseSettings):
    """Per-category rate limit policies.

    ``RATE_LIMIT_POLICIES`` takes a JSON object keyed by category; entries are
    merged over the built-in defaults so the ``api`` fallback always exists.
    """

    policies: dict[str, RateLimitPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_POLICIES),
        description="Policy per action category",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @field_validator("policies")
    @classmethod
    def _merge_defaults(cls, value: dict[str, RateLimitPolicy]) -> dict[str, RateLimitPolicy]:
        return {**DEFAULT_POLICIES, **value}


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(
        "INFO",
        description="Root log level",
    )
    format: Literal["json", "plain"] = Field(
        "json",
        description="Log line format",
    )
    output: Literal["stdout", "file"] = Field(
        "stdout",
        description="Log destination",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file",
    )
    max_bytes: int = Field(
        0,
        description="Rotate log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read/propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if required settings are missing.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    store: StoreSettings = Field(default_factory=_build_store_settings)
    rate_limit: PolicySettings = Field(default_factory=_build_policy_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
