from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage backend: "postgres" for deployments, "memory" for local runs
    STORE_BACKEND: str = "postgres"
    DATABASE_URL: str = "postgresql://localhost:5432/delivery_engine"

    # Redis settings (only needed for the cross-process pacing gate)
    REDIS_URL: str | None = None

    # Telegram Bot API
    TELEGRAM_BOT_TOKEN: str | None = None
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # DELIVERY QUEUE / RETRY POLICY
    # =================================================================
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_BACKOFF_BASE_SECONDS: float = 5.0
    DELIVERY_BACKOFF_MULTIPLIER: float = 5.0

    # =================================================================
    # DISPATCH WORKER POOL
    # =================================================================
    DISPATCH_WORKER_COUNT: int = 4
    DISPATCH_CLAIM_BATCH_SIZE: int = 5
    DISPATCH_POLL_INTERVAL_SECONDS: float = 5.0
    # Claims untouched this long belong to a dead worker; keep well above
    # GATEWAY_TIMEOUT_SECONDS times the claim batch size
    DISPATCH_STALE_CLAIM_SECONDS: float = 600.0
    DISPATCH_RECOVERY_INTERVAL_SECONDS: float = 60.0

    # =================================================================
    # CHANNEL GATEWAY
    # =================================================================
    PACING_BACKEND: str = "local"  # "local" or "redis"
    SEND_SPACING_MS: int = 100
    DELETE_SPACING_MS: int = 50
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # =================================================================
    # ACCESS LIFECYCLE MONITOR
    # =================================================================
    WARNING_SWEEP_HOUR_UTC: int = 9
    EXPIRATION_SWEEP_INTERVAL_MINUTES: int = 60

    # =================================================================
    # AUDIT SINK
    # =================================================================
    AUDIT_BUFFER_SIZE: int = 1000
    AUDIT_FLUSH_BATCH_SIZE: int = 50
    AUDIT_FLUSH_INTERVAL_SECONDS: float = 2.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # Workers are few locally, keep the pool small
            config.update({"min_size": 1, "max_size": 4, "timeout": 15.0})

        return config

    def get_retry_policy(self) -> dict:
        """Retry/backoff parameters for the delivery queue."""
        return {
            "max_attempts": self.DELIVERY_MAX_ATTEMPTS,
            "backoff_base_seconds": self.DELIVERY_BACKOFF_BASE_SECONDS,
            "backoff_multiplier": self.DELIVERY_BACKOFF_MULTIPLIER,
        }

    def get_pacing_config(self) -> dict:
        """Minimum spacing between consecutive gateway calls, in seconds."""
        return {
            "send": self.SEND_SPACING_MS / 1000,
            "delete": self.DELETE_SPACING_MS / 1000,
        }


settings = Settings()
