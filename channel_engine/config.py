from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./channel_engine.db",
        alias="DATABASE_URL"
    )

    # Used to derive the credential encryption key when none is configured
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")

    # Fernet key (urlsafe base64, 32 bytes) for refresh credentials at rest
    credential_encryption_key: str = Field(default="", alias="CREDENTIAL_ENCRYPTION_KEY")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # ==============================================
    # Channel provider (server-side only)
    # ==============================================
    channel_provider: str = Field(default="beds24", alias="CHANNEL_PROVIDER")
    channel_base_url: str = Field(
        default="https://beds24.com/api/v2",
        alias="CHANNEL_BASE_URL"
    )

    # Endpoint paths, relative to channel_base_url
    channel_setup_path: str = Field(default="/authentication/setup", alias="CHANNEL_SETUP_PATH")
    channel_token_path: str = Field(default="/authentication/token", alias="CHANNEL_TOKEN_PATH")
    channel_calendar_path: str = Field(default="/inventory/rooms/calendar", alias="CHANNEL_CALENDAR_PATH")
    channel_bookings_path: str = Field(default="/bookings", alias="CHANNEL_BOOKINGS_PATH")
    channel_properties_path: str = Field(default="/properties", alias="CHANNEL_PROPERTIES_PATH")

    # First incremental booking pull looks back this far
    booking_pull_lookback_days: int = Field(default=7, alias="BOOKING_PULL_LOOKBACK_DAYS")

    # Header carrying the access token on authenticated calls
    channel_auth_header: str = Field(default="token", alias="CHANNEL_AUTH_HEADER")
    channel_device_name: str = Field(default="channel-engine", alias="CHANNEL_DEVICE_NAME")

    # HTTP timeout per call
    channel_timeout_seconds: float = Field(default=20.0, alias="CHANNEL_TIMEOUT_SECONDS")

    # Retry policy (shared by auth / rate-limit / transport retries)
    channel_max_attempts: int = Field(default=3, alias="CHANNEL_MAX_ATTEMPTS")
    channel_backoff_base_seconds: float = Field(default=1.0, alias="CHANNEL_BACKOFF_BASE_SECONDS")
    channel_backoff_max_seconds: float = Field(default=30.0, alias="CHANNEL_BACKOFF_MAX_SECONDS")
    channel_backoff_jitter_seconds: float = Field(default=0.5, alias="CHANNEL_BACKOFF_JITTER_SECONDS")

    # Access tokens expiring within this margin are refreshed before use
    token_safety_margin_seconds: int = Field(default=300, alias="TOKEN_SAFETY_MARGIN_SECONDS")

    # Rate-limit telemetry headers
    rate_limit_remaining_header: str = Field(
        default="X-FiveMinCreditLimit-Remaining",
        alias="RATE_LIMIT_REMAINING_HEADER"
    )
    rate_limit_resets_in_header: str = Field(
        default="X-FiveMinCreditLimit-ResetsIn",
        alias="RATE_LIMIT_RESETS_IN_HEADER"
    )
    rate_limit_cost_header: str = Field(default="X-RequestCost", alias="RATE_LIMIT_COST_HEADER")

    # Below this many remaining credits the client waits before the next call
    channel_low_quota_floor: int = Field(default=50, alias="CHANNEL_LOW_QUOTA_FLOOR")
    channel_max_quota_wait_seconds: float = Field(default=1800.0, alias="CHANNEL_MAX_QUOTA_WAIT_SECONDS")

    # ARI push
    ari_batch_line_limit: int = Field(default=50, alias="ARI_BATCH_LINE_LIMIT")
    ari_batch_delay_seconds: float = Field(default=0.5, alias="ARI_BATCH_DELAY_SECONDS")

    # Reconciliation severity thresholds (absolute rate difference)
    reconcile_rate_high_threshold: float = Field(default=10.0, alias="RECONCILE_RATE_HIGH_THRESHOLD")
    reconcile_rate_medium_threshold: float = Field(default=5.0, alias="RECONCILE_RATE_MEDIUM_THRESHOLD")

    @field_validator('ari_batch_line_limit')
    @classmethod
    def validate_line_limit(cls, v: int) -> int:
        """A batch must carry at least one line"""
        if v < 1:
            raise ValueError("ARI_BATCH_LINE_LIMIT must be at least 1")
        return v

    @field_validator('channel_max_attempts')
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("CHANNEL_MAX_ATTEMPTS must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
