"""Runtime configuration sourced from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse


DEFAULT_SESSION_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_JWT_EXPIRES_IN_SECONDS = 7 * 24 * 3600
DEFAULT_SETTLE_DELAY_SECONDS = 2.0
DEFAULT_RECONNECT_MAX_ATTEMPTS = 10
DEFAULT_JWT_SECRET = "change-me-in-production"


def _normalize_bool(value: str | None, default: bool = False) -> bool:
    """Return normalized boolean from environment-style value."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "0", "false", "no", "off"}:
        return False
    if normalized in {"1", "true", "yes", "on"}:
        return True
    return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _database_url_from_env() -> Optional[str]:
    # DATABASE_URL wins; otherwise build from POSTGRES_* parts (all must be set)
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")
    parts = {
        name: os.getenv(name)
        for name in ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB")
    }
    if not all(parts.values()):
        return None
    return (
        f"postgresql://{parts['POSTGRES_USER']}:{parts['POSTGRES_PASSWORD']}"
        f"@{parts['POSTGRES_HOST']}:{parts['POSTGRES_PORT']}/{parts['POSTGRES_DB']}"
    )


@dataclass(frozen=True)
class RedisSettings:
    host: str
    port: int
    tls: bool
    password: Optional[str]
    db: int = 0


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    redis_url: Optional[str]
    redis_host: Optional[str]
    redis_port: int
    redis_tls: bool
    redis_password: Optional[str]
    cache_reconnect_max_attempts: int
    schema_settle_delay_seconds: float
    session_ttl_seconds: int
    jwt_secret: str
    jwt_expires_in_seconds: int
    app_env: str
    app_phase: str
    log_level: str
    alembic_config: Optional[str]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_build_phase(self) -> bool:
        return self.app_phase == "build"

    @property
    def cache_configured(self) -> bool:
        return bool(self.redis_url or self.redis_host)

    @property
    def cache_enabled(self) -> bool:
        """False in build phase, and in production when no Redis is configured."""
        if self.is_build_phase:
            return False
        if self.is_production and not self.cache_configured:
            return False
        return True

    def redis_connection(self) -> RedisSettings:
        """Resolve host/port/TLS, preferring REDIS_URL (``rediss://`` implies TLS)."""
        if self.redis_url:
            parsed = urlparse(self.redis_url)
            db = 0
            path = (parsed.path or "").lstrip("/")
            if path.isdigit():
                db = int(path)
            return RedisSettings(
                host=parsed.hostname or "localhost",
                port=parsed.port or 6379,
                tls=parsed.scheme == "rediss",
                password=parsed.password or self.redis_password,
                db=db,
            )
        return RedisSettings(
            host=self.redis_host or "localhost",
            port=self.redis_port,
            tls=self.redis_tls,
            password=self.redis_password,
        )


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """Return the cached settings snapshot sourced from the environment."""
    return Settings(
        database_url=_database_url_from_env(),
        redis_url=os.getenv("REDIS_URL") or None,
        redis_host=os.getenv("REDIS_HOST") or None,
        redis_port=_int_env("REDIS_PORT", 6379),
        redis_tls=_normalize_bool(os.getenv("REDIS_TLS"), default=False),
        redis_password=os.getenv("REDIS_PASSWORD") or None,
        cache_reconnect_max_attempts=max(0, _int_env("CACHE_RECONNECT_MAX_ATTEMPTS", DEFAULT_RECONNECT_MAX_ATTEMPTS)),
        schema_settle_delay_seconds=max(0.0, _float_env("SCHEMA_SETTLE_DELAY_SECONDS", DEFAULT_SETTLE_DELAY_SECONDS)),
        session_ttl_seconds=max(1, _int_env("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)),
        jwt_secret=os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET,
        jwt_expires_in_seconds=max(1, _int_env("JWT_EXPIRES_IN_SECONDS", DEFAULT_JWT_EXPIRES_IN_SECONDS)),
        app_env=(os.getenv("APP_ENV") or "development").strip().lower(),
        app_phase=(os.getenv("APP_PHASE") or "runtime").strip().lower(),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        alembic_config=os.getenv("ALEMBIC_CONFIG") or None,
    )


def refresh_settings_cache() -> None:
    """Invalidate cached settings (useful for tests)."""
    get_settings.cache_clear()
