from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

N = TypeVar("N", int, float)

TRUTHY = {"1", "true", "yes", "y", "on"}


def _number_env(
    name: str,
    default: N,
    cast: Callable[[str], N],
    *,
    low: Optional[N] = None,
    high: Optional[N] = None,
) -> N:
    """Read a numeric variable, falling back to ``default`` when unparseable, then clamp."""
    raw = os.getenv(name)
    try:
        value = cast(raw.strip()) if raw is not None else default
    except ValueError:
        value = default
    if low is not None:
        value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return default if raw is None else raw.strip().lower() in TRUTHY


def _str_env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    ats_webhook_secret: str
    webhook_max_retries: int
    webhook_retry_backoff_seconds: int
    webhook_retry_max_backoff_seconds: int
    webhook_retry_jitter_ratio: float
    webhook_lease_seconds: int
    webhook_max_workers: int
    webhook_batch_limit: int
    sync_max_workers: int
    sync_http_timeout_seconds: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str


def load_settings() -> Settings:
    db_path = _str_env("PERSISTENCE_DB_PATH", "data/ats_pipeline.sqlite3")
    # Windows paths need forward slashes inside a SQLAlchemy URL.
    database_url = _str_env("DATABASE_URL") or f"sqlite:///{db_path.replace(chr(92), '/')}"
    backoff = _number_env("WEBHOOK_RETRY_BACKOFF_SECONDS", 60, int, low=1)
    return Settings(
        app_env=_str_env("APP_ENV", "development"),
        log_level=_str_env("LOG_LEVEL", "INFO").upper() or "INFO",
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=db_path,
        database_url=database_url,
        ats_webhook_secret=_str_env("ATS_WEBHOOK_SECRET"),
        webhook_max_retries=_number_env("WEBHOOK_MAX_RETRIES", 3, int, low=1),
        webhook_retry_backoff_seconds=backoff,
        webhook_retry_max_backoff_seconds=_number_env(
            "WEBHOOK_RETRY_MAX_BACKOFF_SECONDS", 3600, int, low=backoff
        ),
        webhook_retry_jitter_ratio=_number_env(
            "WEBHOOK_RETRY_JITTER_RATIO", 0.2, float, low=0.0, high=1.0
        ),
        webhook_lease_seconds=_number_env("WEBHOOK_LEASE_SECONDS", 300, int, low=5),
        webhook_max_workers=_number_env("WEBHOOK_MAX_WORKERS", 4, int, low=1, high=32),
        webhook_batch_limit=_number_env("WEBHOOK_BATCH_LIMIT", 100, int, low=1, high=1000),
        sync_max_workers=_number_env("SYNC_MAX_WORKERS", 4, int, low=1, high=32),
        sync_http_timeout_seconds=_number_env("SYNC_HTTP_TIMEOUT_SECONDS", 60, int, low=1),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=_str_env("JWT_SECRET", "dev-only-secret-change-in-prod"),
        jwt_algorithm=_str_env("JWT_ALGORITHM", "HS256"),
    )
