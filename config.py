"""
Application configuration — environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # Database: SQLite (default) or PostgreSQL (set DATABASE_URL=postgresql://...)
    DATABASE = os.environ.get("DATABASE_URL") or str(BASE_DIR / "teachme.db")
    SQLITE_BUSY_TIMEOUT = float(os.environ.get("SQLITE_BUSY_TIMEOUT", "5"))
    # Attempts per transaction before ConcurrentUpdateConflict
    TRANSACTION_MAX_RETRIES = int(os.environ.get("TRANSACTION_MAX_RETRIES", "5"))

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Redis (leaderboard cache); empty = in-memory
    REDIS_URL = os.environ.get("REDIS_URL", "")

    # Streak days are calendar days in this zone
    STREAK_TIMEZONE = os.environ.get("STREAK_TIMEZONE", "UTC")

    # Leaderboards
    LEADERBOARD_CACHE_TTL = int(os.environ.get("LEADERBOARD_CACHE_TTL", "60"))
    LEADERBOARD_SNAPSHOT_INTERVAL = int(os.environ.get("LEADERBOARD_SNAPSHOT_INTERVAL", "86400"))
    LEADERBOARD_DEFAULT_LIMIT = int(os.environ.get("LEADERBOARD_DEFAULT_LIMIT", "10"))
    LEADERBOARD_MAX_LIMIT = int(os.environ.get("LEADERBOARD_MAX_LIMIT", "100"))

    # Background housekeeping (streak expiry, cache cleanup)
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "true").lower() == "true"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")
        if cls.TRANSACTION_MAX_RETRIES < 1:
            errors.append("TRANSACTION_MAX_RETRIES must be at least 1.")
        if cls.LEADERBOARD_DEFAULT_LIMIT > cls.LEADERBOARD_MAX_LIMIT:
            errors.append("LEADERBOARD_DEFAULT_LIMIT cannot exceed LEADERBOARD_MAX_LIMIT.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    SCHEDULER_ENABLED = False
    LEADERBOARD_SNAPSHOT_INTERVAL = 0


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
