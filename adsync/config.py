"""Settings management for the sync pipeline.

WHAT:
    Single pydantic-settings model holding every tunable of the pipeline
    (database, Redis, OAuth, rate limits, queue retention, worker caps and
    sync windows).

WHY:
    Workers, the scheduler and tests all read the same values; tests override
    them through environment variables or by constructing `Settings(...)`.

REFERENCES:
    - adsync/workers/job_queue.py (queue definitions built from these values)
    - adsync/services/sync_orchestrator.py (sync windows)
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "sqlite:///./adsync.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    ENVIRONMENT: str = "development"

    # Secret used to derive the AES-256-GCM key for stored OAuth tokens
    TOKEN_ENCRYPTION_KEY: str = ""

    # Google OAuth + Ads API
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:3000/api/oauth/google/callback"
    GOOGLE_DEVELOPER_TOKEN: str = ""
    GOOGLE_LOGIN_CUSTOMER_ID: Optional[str] = None
    GOOGLE_ADS_API_VERSION: str = "v17"
    GOOGLE_ADS_BASE_URL: str = "https://googleads.googleapis.com"
    HTTP_TIMEOUT_SECONDS: float = 30.0
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300

    # Shared token bucket for the Google Ads API
    RATE_LIMIT_KEY: str = "google-ads"
    RATE_LIMIT_CAPACITY: int = 60
    RATE_LIMIT_REFILL_PER_SECOND: float = 1.0
    RATE_LIMIT_MAX_WAIT_MS: int = 30000
    RATE_LIMIT_POLL_INTERVAL_MS: int = 100

    # Queue retry + retention (ads-sync)
    SYNC_QUEUE_NAME: str = "ads-sync"
    SYNC_JOB_ATTEMPTS: int = 3
    SYNC_JOB_BACKOFF_MS: int = 5000
    SYNC_KEEP_RESULT_SECONDS: int = 24 * 3600
    SYNC_JOB_EXPIRES_SECONDS: int = 7 * 24 * 3600

    # Queue retry + retention (ads-dimensions)
    DIMENSIONS_QUEUE_NAME: str = "ads-dimensions"
    DIMENSIONS_JOB_ATTEMPTS: int = 3
    DIMENSIONS_JOB_BACKOFF_MS: int = 3000
    # Results also hold the job id, so this is the dedupe window for dims:{account}:{day}
    DIMENSIONS_KEEP_RESULT_SECONDS: int = 24 * 3600
    DIMENSIONS_JOB_EXPIRES_SECONDS: int = 24 * 3600

    # Worker pool
    SYNC_WORKER_CONCURRENCY: int = 3
    SYNC_WORKER_MAX_STARTS: int = 10
    SYNC_WORKER_WINDOW_SECONDS: int = 60
    DIMENSIONS_WORKER_CONCURRENCY: int = 2
    DIMENSIONS_WORKER_MAX_STARTS: int = 20
    DIMENSIONS_WORKER_WINDOW_SECONDS: int = 60
    # Checked cooperatively between batches; arq cancels the attempt after the grace period
    JOB_TIMEOUT_SECONDS: int = 600
    JOB_TIMEOUT_GRACE_SECONDS: int = 60
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_SHUTDOWN_GRACE_SECONDS: int = 30

    # Sync windows
    INITIAL_SYNC_DAYS: int = 90
    SYNC_CHUNK_DAYS: int = 30
    SYNC_STALE_JOB_MINUTES: int = 15
    SYNC_AD_LEVEL_METRICS: bool = False
    INTRADAY_SYNC_ENABLED: bool = True
    DAILY_SYNC_CRON: str = "0 6 * * *"
    INTRADAY_SYNC_CRON: str = "0 */4 * * *"
    ACCOUNT_LOCK_TIMEOUT_SECONDS: int = 30

    # Aggregate query cache
    CACHE_PREFIX: str = "metrics"
    CACHE_TTL_SECONDS: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
