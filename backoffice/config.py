# backoffice/config.py

# App configuration using Pydantic BaseSettings (loads from .env or defaults).
# Holds job intervals, aggregation windows, the pending-payment timeout
# and the switch for the one-shot stock backfill run at startup.

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./backoffice.sqlite"
    LOG_LEVEL: str = "INFO"

    SCHEDULER_ENABLED: bool = True

    SLA_JOB_INTERVAL_SECONDS: int = 300
    SLA_WARNING_RATIO: float = 0.75

    STATS_JOB_INTERVAL_SECONDS: int = 300
    STATS_DAILY_WINDOW_DAYS: int = 7
    STATS_WEEKLY_WINDOW_WEEKS: int = 4
    STATS_MONTHLY_WINDOW_MONTHS: int = 6

    EXPIRY_JOB_INTERVAL_SECONDS: int = 6 * 60 * 60

    MAINTENANCE_INTERVAL_SECONDS: int = 60
    PENDING_PAYMENT_TIMEOUT_SECONDS: int = 300

    STOCK_SYNC_ON_STARTUP_ENABLED: bool = False
    STOCK_SYNC_ON_STARTUP_DELAY_SECONDS: int = 3
    STOCK_SYNC_BATCH_SIZE: int = 200

    SEED_DIR: str | None = None

    class Config:
        env_file = ".env"

settings = Settings()
