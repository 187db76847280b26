"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./livesync.db"

    # TheSports provider
    THESPORTS_BASE_URL: str = "https://api.thesports.com/v1/football"
    THESPORTS_USER: str = ""
    THESPORTS_SECRET: str = ""
    THESPORTS_REQUESTS_PER_MINUTE: int = 120
    THESPORTS_TIMEOUT_SECONDS: float = 20.0
    PROVIDER_MAX_RETRIES: int = 3

    # Change-detection poller (data/update is refreshed upstream every ~20s)
    POLLER_INTERVAL_SECONDS: int = 20
    # Trend / player stats are fetched separately, at most this often per live match
    LIVE_EXTRAS_REFRESH_SECONDS: int = 120

    # Stuck-match watchdog
    STALE_CHECK_INTERVAL_SECONDS: int = 30
    STALE_LIVE_SECONDS: int = 120
    STALE_HALF_TIME_SECONDS: int = 900
    STALE_RECONCILE_COOLDOWN_SECONDS: int = 300
    STALE_FORCE_END_SECONDS: int = 7200
    STALE_BATCH_LIMIT: int = 50

    # Proactive status check over today's matches
    STATUS_CHECK_INTERVAL_SECONDS: int = 60
    STATUS_CHECK_SUSPICIOUS_END_MINUTES: int = 150
    STATUS_CHECK_BATCH_LIMIT: int = 100
    STATUS_CHECK_MATCH_DELAY_SECONDS: float = 0.2

    # Half-time / full-time stats snapshots
    HALF_STATS_INTERVAL_SECONDS: int = 60
    HALF_STATS_LOOKBACK_HOURS: int = 24

    # Window sync: bulletins are cut at provider midnight (TSI, UTC+3)
    WINDOW_SYNC_TZ_OFFSET_HOURS: int = 3
    WINDOW_SYNC_MAX_ATTEMPTS: int = 3
    WINDOW_SYNC_RETRY_BACKOFF_SECONDS: float = 2.0
    WINDOW_SYNC_BATCH_SIZE: int = 100
    WINDOW_SYNC_BATCH_DELAY_SECONDS: float = 0.5
    WINDOW_SYNC_CATCHUP_MINUTES: int = 5
    WINDOW_SYNC_INTRADAY_HOURS: str = "4,8,12,16,20"

    # Post-match finalizer
    FINALIZER_LOOKBACK_HOURS: int = 24
    FINALIZER_BATCH_LIMIT: int = 50
    FINALIZER_MATCH_DELAY_SECONDS: float = 0.5
    FINALIZER_SWEEP_MINUTES: int = 10

    # Match store writes
    STORE_MAX_RETRIES: int = 3
    STORE_RETRY_DELAY_SECONDS: float = 0.5

    # Reconciler: compare observed_at against stored <field>_timestamp (off = arrival order)
    RECONCILER_EVENT_TIME_ORDERING: bool = False

    # Read side
    READ_DEADLINE_SECONDS: float = 2.0
    READ_RATE_LIMIT: str = "120/minute"

    # Ops
    SCHEDULER_ENABLED: bool = True
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.05
    METRICS_BEARER_TOKEN: str = ""


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
