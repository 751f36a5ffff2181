"""
Application configuration — environment-aware settings.

Values from a local .env file are loaded first so development setups need no
exported variables. Redis is optional everywhere: without REDIS_URL the
outbox dispatches inline, realtime stays in-process and rate limits live in
memory.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")

DEFAULT_SECRET = "dev-key-change-in-production"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        warnings.warn(f"{name}={raw!r} is not an integer, using {default}")
        return default


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", DEFAULT_SECRET)
    DATABASE = os.environ.get("DATABASE_PATH", str(BASE_DIR / "bienestar.db"))
    WTF_CSRF_ENABLED = True
    MAX_CONTENT_LENGTH = 256 * 1024  # JSON bodies only

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    PERMANENT_SESSION_LIFETIME = 12 * 3600  # one school day

    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    REDIS_URL = os.environ.get("REDIS_URL", "")
    RATELIMIT_STORAGE_URI = REDIS_URL or "memory://"

    OUTBOX_MAX_ATTEMPTS = _env_int("OUTBOX_MAX_ATTEMPTS", 5)
    OUTBOX_RETRY_MINUTES = _env_int("OUTBOX_RETRY_MINUTES", 10)

    # Seconds between SSE keepalive comments on /api/realtime/stream
    REALTIME_KEEPALIVE = _env_int("REALTIME_KEEPALIVE", 15)
    # Unread trackers not read for this long are closed by the scheduler
    TRACKER_IDLE_SECONDS = _env_int("TRACKER_IDLE_SECONDS", 1800)

    # Shown to a student whose reflection matches a critical keyword
    EMERGENCY_PHONE = os.environ.get("EMERGENCY_PHONE", "131")
    SUICIDE_PREVENTION_PHONE = os.environ.get("SUICIDE_PREVENTION_PHONE", "1729")


class DevelopmentConfig(BaseConfig):
    DEBUG = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    SESSION_COOKIE_SECURE = True

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in (DEFAULT_SECRET, ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")
        if cls.OUTBOX_MAX_ATTEMPTS < 1:
            errors.append("OUTBOX_MAX_ATTEMPTS must be at least 1.")

        if not cls.REDIS_URL:
            warnings.warn(
                "REDIS_URL is not set: side effects run inline and realtime broadcasts "
                "only reach streams served by this process."
            )

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    REDIS_URL = ""
    LOG_LEVEL = "WARNING"


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
