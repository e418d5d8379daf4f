"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Automation Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker for the "celery" queue backend)
    REDIS_URL: str = ""

    # Security Settings
    # MUST be set in environment for production; defaults only safe for development
    ENCRYPTION_KEY: str = ""

    # Execution queue
    QUEUE_BACKEND: str = "local"  # local, celery, direct
    QUEUE_NAME: str = "workflows-execution"
    WORKFLOW_CONCURRENCY: Optional[int] = None
    QUEUE_MAX_JOBS_PER_WINDOW: int = 300
    QUEUE_RATE_WINDOW_SECONDS: float = 60.0
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_BACKOFF_BASE_SECONDS: float = 10.0
    QUEUE_DEFAULT_PRIORITY: int = 5
    QUEUE_COMPLETED_RETENTION_SECONDS: int = 86400  # 24 hours
    QUEUE_COMPLETED_RETENTION_COUNT: int = 1000
    QUEUE_FAILED_RETENTION_SECONDS: int = 604800  # 7 days
    QUEUE_FAILED_RETENTION_COUNT: int = 5000
    QUEUE_SHUTDOWN_GRACE_SECONDS: float = 30.0
    QUEUE_MAX_CIRCUIT_DEFERRALS: int = 5

    # Resilience (per external capability)
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_FAILURE_RATE_THRESHOLD: float = 0.5
    CIRCUIT_MIN_CALLS: int = 20
    CIRCUIT_RECOVERY_SECONDS: float = 60.0
    CAPABILITY_TIMEOUT_SECONDS: float = 60.0
    CAPABILITY_RATE_LIMIT: int = 500
    CAPABILITY_RATE_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_MAX_WAIT_SECONDS: float = 120.0

    # Triggers
    WEBHOOK_SIGNATURE_HEADER: str = "X-Webhook-Signature"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    EMAIL_POLL_CRON: str = "*/5 * * * *"
    IMAP_HOST: str = ""
    IMAP_PORT: int = 993
    IMAP_USERNAME: str = ""
    IMAP_PASSWORD: str = ""

    # Ephemeral storage
    STORAGE_CLEANUP_CRON: str = "0 * * * *"

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def queue_concurrency(self) -> int:
        """Worker ceiling: explicit value, else 100 in production and 20 elsewhere."""
        if self.WORKFLOW_CONCURRENCY:
            return self.WORKFLOW_CONCURRENCY
        return 100 if self.is_production else 20

    def validate_secrets(self) -> None:
        """Validate that critical secrets are not using defaults in production.

        Raises:
            RuntimeError: If production environment has an empty ENCRYPTION_KEY
        """
        if self.is_production and not self.ENCRYPTION_KEY:
            raise RuntimeError(
                "CRITICAL: ENCRYPTION_KEY environment variable must be set in production. "
                "Stored credentials cannot be decrypted without it."
            )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
