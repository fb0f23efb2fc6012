from __future__ import annotations

"""
config.py

Environment-driven settings for the context brain.

All values are read once at startup. Invalid numbers fall back to the
defaults instead of failing the import.
"""

import os
from dataclasses import dataclass


def _env(name: str) -> str:
    return (os.getenv(name, "") or "").strip()


def _int_env(name: str, default: int) -> int:
    try:
        raw = _env(name)
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


def _float_env(name: str, default: float) -> float:
    try:
        raw = _env(name)
        return float(raw) if raw else float(default)
    except ValueError:
        return float(default)


@dataclass(frozen=True)
class Settings:
    db_path: str
    chittyid_service_url: str
    chittyid_token: str
    chittyid_timeout: float
    chittyid_retry_after_seconds: int
    suspension_ttl_seconds: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        db_path=_env("CONTEXT_BRAIN_DB_PATH") or "/app/data/context_brain.db",
        chittyid_service_url=(_env("CHITTYID_SERVICE_URL") or "https://id.chitty.cc").rstrip("/"),
        chittyid_token=_env("CHITTY_ID_SERVICE_TOKEN"),
        chittyid_timeout=_float_env("CHITTYID_TIMEOUT_SECONDS", 10.0),
        chittyid_retry_after_seconds=_int_env("CHITTYID_RETRY_AFTER_SECONDS", 30),
        suspension_ttl_seconds=_int_env("SUSPENSION_DEFAULT_TTL_SECONDS", 86400),
        log_level=(_env("CONTEXT_BRAIN_LOG_LEVEL") or "INFO").upper(),
    )
