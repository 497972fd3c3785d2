"""Configuration helpers and Settings container.

This module provides a small `Settings` dataclass and `get_settings` which
reads environment variables. The pseudonymization salt (`ANON_SALT`) is
required: without it the pipeline refuses to start.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import os

from dotenv import load_dotenv

from insights_pipeline.errors import ConfigError

# Explicitly load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env")

MIN_SALT_LENGTH = 32


@dataclass(frozen=True)
class Settings:
    """Container for pipeline configuration read from the environment.

    Attributes:
        mongo_uri: MongoDB connection URI.
        mongo_db: Target MongoDB database name.
        mongo_tls: Whether to connect with TLS using the certifi CA bundle.
        anon_salt: Secret salt for pseudonymization.
        window_days: Rolling window of contributions used for trends.
        builder_workers: Size of the contribution builder worker pool.
        lock_ttl_seconds: Expiry of the aggregator advisory lock.
    """
    mongo_uri: str
    mongo_db: str
    mongo_tls: bool
    anon_salt: str
    window_days: int
    builder_workers: int
    lock_ttl_seconds: int

    def __repr__(self) -> str:
        return (
            f"Settings(mongo_db={self.mongo_db!r}, window_days={self.window_days}, "
            f"builder_workers={self.builder_workers}, anon_salt=<redacted>)"
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def validate_salt(salt: str | None) -> str:
    """Return the salt if usable, otherwise raise `ConfigError`.

    There is no fallback value.
    """
    salt = (salt or "").strip()
    if not salt:
        raise ConfigError(
            "ANON_SALT is required. Set it in .env to a long random secret "
            "(example: output of `openssl rand -hex 32`)."
        )
    if len(salt) < MIN_SALT_LENGTH:
        raise ConfigError(
            f"ANON_SALT must be at least {MIN_SALT_LENGTH} characters",
            details={"length": len(salt)},
        )
    return salt


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read environment variables and return a frozen `Settings` object.

    The result is cached so the salt is loaded once per process; tests call
    `get_settings.cache_clear()` after changing the environment.

    Raises:
        ConfigError: if `ANON_SALT` is missing or too short, or a numeric
            variable is not a positive integer.
    """
    mongo_uri = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    mongo_db = os.getenv("MONGO_DB", "insights")
    mongo_tls = os.getenv("MONGO_TLS", "false").strip().lower() in ("1", "true", "yes")
    anon_salt = validate_salt(os.getenv("ANON_SALT"))

    return Settings(
        mongo_uri=mongo_uri,
        mongo_db=mongo_db,
        mongo_tls=mongo_tls,
        anon_salt=anon_salt,
        window_days=_int_env("CONTRIBUTION_WINDOW_DAYS", 90),
        builder_workers=_int_env("BUILDER_WORKERS", 8),
        lock_ttl_seconds=_int_env("LOCK_TTL_SECONDS", 3600),
    )
