"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str = "sqlite+pysqlite:///./helpdesk.db"

    # Redis (pub/sub backplane + presence store). Empty or memory:// = in-process only
    REDIS_URL: str = ""

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 8

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"

    # Rate Limiting (requests per minute)
    RATE_LIMIT_MESSAGES: int = 30

    # Global presence: heartbeat cadence and how many missed beats mark a user offline
    GLOBAL_HEARTBEAT_SECONDS: int = 15
    GLOBAL_OFFLINE_MISSED_BEATS: int = 4
    IDLE_AWAY_SECONDS: int = 120

    # Ticket viewers: refresh cadence and missed beats before a row is hidden
    VIEWER_HEARTBEAT_SECONDS: int = 30
    VIEWER_STALE_MISSED_BEATS: int = 3
    VIEWER_PURGE_SECONDS: int = 3600  # Rows older than this are deleted by the sweeper

    # Event channel
    EVENT_QUEUE_SIZE: int = 256  # Per-subscription buffer; oldest events dropped when full
    EVENT_REDIS_CHANNEL: str = "helpdesk:events"

    # Best-effort side effects
    DEAD_LETTER_LIMIT: int = 500

    # Attachments (metadata only, upload happens in object storage)
    ATTACHMENT_MAX_BYTES: int = 10 * 1024 * 1024
    ATTACHMENT_ALLOWED_TYPES: str = (
        "image/jpeg,image/png,image/gif,image/webp,application/pdf,"
        "application/msword,"
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document,"
        "application/vnd.ms-excel,"
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet,"
        "text/plain"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def global_offline_seconds(self) -> int:
        """Age after which a global presence record is considered offline."""
        return self.GLOBAL_HEARTBEAT_SECONDS * self.GLOBAL_OFFLINE_MISSED_BEATS

    @property
    def viewer_window_seconds(self) -> int:
        """Age after which a ticket viewer row is excluded from the active set."""
        return self.VIEWER_HEARTBEAT_SECONDS * self.VIEWER_STALE_MISSED_BEATS

    @property
    def attachment_allowed_types(self) -> set[str]:
        return {t.strip() for t in self.ATTACHMENT_ALLOWED_TYPES.split(",") if t.strip()}


settings = Settings()
