"""Application configuration."""

from pydantic import model_validator
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Scheduler"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./scheduler.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker/backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security Settings
    # MUST be set in environment for production; defaults only safe for development
    SECRET_KEY: str = ""
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Dispatch loop
    SCHEDULER_DISPATCH_ENABLED: bool = True
    SCHEDULER_POLL_INTERVAL_SECONDS: float = 30.0
    SCHEDULER_BATCH_SIZE: int = 25
    SCHEDULER_MAX_CONCURRENCY: int = 5
    SCHEDULER_CLAIM_TTL_SECONDS: int = 300

    # Workflow execution engine
    EXECUTION_DISPATCH_TIMEOUT_SECONDS: float = 30.0
    EXECUTION_TASK_NAME: str = "worker.tasks.workflow.execute_workflow"
    EXECUTION_QUEUE: str = "workflows"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @model_validator(mode="after")
    def check_dispatch_timeout(self) -> "Settings":
        # A claim must outlive the hand-over it protects
        if self.EXECUTION_DISPATCH_TIMEOUT_SECONDS >= self.SCHEDULER_CLAIM_TTL_SECONDS:
            raise ValueError(
                "EXECUTION_DISPATCH_TIMEOUT_SECONDS must be shorter than SCHEDULER_CLAIM_TTL_SECONDS"
            )
        return self

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

    def validate_secrets(self) -> None:
        """Validate that critical secrets are not using defaults in production.

        Raises:
            RuntimeError: If production environment has an empty SECRET_KEY
        """
        if self.is_production and not self.SECRET_KEY:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable must be set in production. "
                "Do not use default values."
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
