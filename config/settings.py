"""
Centralized configuration using pydantic-settings.

How it works:
- Reads environment variables automatically (e.g., LEASE_DURATION_SECONDS env var → Settings.LEASE_DURATION_SECONDS)
- Falls back to defaults defined here if env vars are not set
- Can also read from a .env file in the project root

The worker and the monitoring API read their defaults from `settings`;
the orchestrator classes themselves take explicit arguments so tests can
build them with whatever values they need.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── PostgreSQL ──────────────────────────────────────────────
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "delayedjobs"
    POSTGRES_PASSWORD: str = "delayedjobs"
    POSTGRES_DB: str = "delayedjobs"
    DATABASE_URL: Optional[str] = None  # full sync URL, overrides POSTGRES_*

    # ── Worker ──────────────────────────────────────────────────
    WORKER_POLL_INTERVAL: float = 1.0  # seconds between lease attempts per queue
    WORKER_BATCH_SIZE: int = 10        # max jobs leased per tick
    WORKER_MAX_PARALLEL: int = 4       # dispatch threads per queue loop
    WORKER_QUEUES: list[str] = ["HIGH", "DEFAULT", "LOW", "BULK", "SCREENSHOT"]

    # ── Leasing ─────────────────────────────────────────────────
    LEASE_DURATION_SECONDS: int = 300  # an expired lease can be stolen by any worker

    # ── Retry ───────────────────────────────────────────────────
    DEFAULT_MAX_ATTEMPTS: int = 5
    BACKOFF_BASE_SECONDS: int = 30     # delay = 2^attempt * base * jitter[0.75, 1.25]
    BACKOFF_MAX_SECONDS: int = 86400   # no retry is scheduled further out than this

    # ── Concurrency gates ───────────────────────────────────────
    SCREENSHOT_CONCURRENCY: int = 3
    GATE_ACQUIRE_TIMEOUT: float = 60.0

    # ── Expired lease sweep ─────────────────────────────────────
    REAPER_ENABLED: bool = False
    REAPER_INTERVAL: float = 60.0

    # ── Handlers ────────────────────────────────────────────────
    HANDLER_ENTRY_POINT_GROUP: str = "delayed_jobs.handlers"

    # ── App ─────────────────────────────────────────────────────
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    @property
    def sync_database_url(self) -> str:
        """Sync connection string for worker threads (uses psycopg2 driver)."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def database_url(self) -> str:
        """Async connection string for FastAPI (uses asyncpg driver)."""
        if self.DATABASE_URL:
            return (
                self.DATABASE_URL
                .replace("+psycopg2", "+asyncpg")
                .replace("sqlite://", "sqlite+aiosqlite://")
            )
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton — import this everywhere
settings = Settings()
