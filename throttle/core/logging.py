"""Logging utilities with JSON formatting, scrubbing, and request correlation.

This module centralizes logging configuration, including:
- Context-aware request_id propagation via contextvars
- Scrubbing of structured extras: secrets are redacted, caller identifiers
  are replaced by a short SHA-256 fingerprint so denials for the same caller
  can still be correlated
- JSON and ``key=value`` plain formatters, stdout/file handlers with rotation
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from throttle.core.config import LogSettings, settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

REDACTED = "[REDACTED]"

# Credentials: dropped entirely
SECRET_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "api_key",
        "x-api-key",
        "apikey",
        "authorization",
        "password",
        "service_role_key",
        "supabase_service_role_key",
        "app_api_keys",
        "cookie",
        "set-cookie",
    }
)

# Caller identifiers: fingerprinted
HASHED_KEYS_DEFAULT: frozenset[str] = frozenset(
    {"identifier", "email", "key", "client_host"}
)

# Attributes every LogRecord carries; anything else arrived through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def set_request_id(request_id: str | None) -> None:
    """Store the current request id in a context variable."""

    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def hash_identifier(value: str) -> str:
    """Return a short, stable fingerprint of a caller identifier or key.

    Args:
        value: Raw identifier (email, IP, API key, record key).

    Returns:
        First 16 hex chars of the SHA-256 digest.
    """

    return hashlib.sha256(value.encode()).hexdigest()[:16]


class Scrubber:
    """Rewrites structured log values according to their field names.

    Matching is case-insensitive and applies at any nesting depth, so a
    ``headers`` mapping carrying ``apikey`` is cleaned as well.
    """

    def __init__(
        self,
        secret_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        self.secret_keys = {k.lower() for k in (secret_keys or SECRET_KEYS_DEFAULT)}
        self.hashed_keys = {k.lower() for k in (hashed_keys or HASHED_KEYS_DEFAULT)}

    def scrub(self, key: str, value: Any) -> Any:
        name = key.lower()
        if name in self.secret_keys:
            return REDACTED
        if name in self.hashed_keys and value is not None:
            return hash_identifier(str(value))
        if isinstance(value, Mapping):
            return {k: self.scrub(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.scrub("", v) for v in value)
        return value

    def extras(self, record: LogRecord) -> dict[str, Any]:
        """Scrubbed copy of the fields passed through ``extra=``.

        Records already cleaned by ``SensitiveDataFilter`` are returned as-is
        so fingerprints are not hashed twice.
        """

        done = getattr(record, "_scrubbed", False)
        return {
            key: value if done else self.scrub(key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub extras in place so every downstream formatter sees clean values."""

    def __init__(self, scrubber: Scrubber | None = None) -> None:
        super().__init__()
        self.scrubber = scrubber or Scrubber()

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        for key, value in self.scrubber.extras(record).items():
            setattr(record, key, value)
        record._scrubbed = True
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: fixed header fields followed by the extras."""

    def __init__(self, *, scrubber: Scrubber | None = None, ensure_ascii: bool = True) -> None:
        super().__init__()
        self.scrubber = scrubber or Scrubber()
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        record_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            record_data["request_id"] = request_id

        record_data.update(self.scrubber.extras(record))
        if record.exc_info:
            record_data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(record_data, default=str, ensure_ascii=self.ensure_ascii)


class PlainFormatter(logging.Formatter):
    """Human-readable line: ``<time> <LEVEL> <logger> [<request_id>] event k=v ...``."""

    def __init__(self, *, scrubber: Scrubber | None = None) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s")
        self.scrubber = scrubber or Scrubber()

    def format(self, record: LogRecord) -> str:  # noqa: D401
        head = super().format(record)
        extras = self.scrubber.extras(record)
        request_id = extras.pop("request_id", None) or get_request_id() or "-"
        pairs = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        line = f"{head} [{request_id}] {record.getMessage()}"
        return f"{line} {pairs}" if pairs else line


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output == "file":
        file_path = Path(log_settings.file_path or "logs/throttle.log")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if log_settings.max_bytes:
            return RotatingFileHandler(
                file_path,
                maxBytes=log_settings.max_bytes,
                backupCount=log_settings.backup_count,
                encoding="utf-8",
            )
        return logging.FileHandler(file_path, encoding="utf-8")

    return logging.StreamHandler(sys.stdout)


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Configure the root logger with request correlation and scrubbing.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """

    cfg = log_settings or settings.log
    scrubber = Scrubber()

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter(scrubber))
    handler.setFormatter(
        PlainFormatter(scrubber=scrubber)
        if cfg.format == "plain"
        else JsonFormatter(scrubber=scrubber)
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # Avoid double logging from uvicorn if it gets re-configured
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").propagate = False
