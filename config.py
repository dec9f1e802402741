"""
MathPulse Worker – Configuration Management.

Uses Pydantic Settings for type-safe environment variable loading.
All config values have sensible defaults for local development,
but MUST be overridden via .env or container environment in production.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Field names match the environment variable names exactly
    (case-sensitive), e.g. `JOB_MAX_ATTEMPTS=5`.
    """

    # ── Redis ────────────────────────────────────────────────────
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str = ""

    # ── Record Store ─────────────────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./mathpulse.db"

    # ── Google Gemini API ────────────────────────────────────────
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    GENERATOR_TIMEOUT_SECONDS: float = 30.0

    # ── Job Queues ───────────────────────────────────────────────
    PROBLEM_QUEUE_CONCURRENCY: int = 2
    FEEDBACK_QUEUE_CONCURRENCY: int = 2
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_BASE_MS: int = 2000
    """
    Exponential backoff base. A job that failed its n-th attempt becomes
    eligible again after BASE * 2^(n-1), i.e. 2s then 4s with the defaults.
    """

    JOB_KEEP_COMPLETED: int = 100
    JOB_KEEP_FAILED: int = 50
    QUEUE_LEASE_POLL_MS: int = 500
    STALLED_JOB_TIMEOUT_SECONDS: int = 300
    QUEUE_MAINTENANCE_INTERVAL_SECONDS: int = 30

    # ── Status Poller (client fallback) ──────────────────────────
    POLL_INTERVAL_MS: int = 3000
    POLL_MAX_ATTEMPTS: int = 20

    # ── Worker ───────────────────────────────────────────────────
    RUN_WORKERS: bool = True
    NOTIFICATION_RELAY_ENABLED: bool = True
    NOTIFICATION_CHANNEL: str = "mathpulse:notifications"
    WORKER_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, parsed once."""
    return Settings()
