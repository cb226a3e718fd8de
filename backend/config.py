"""
Configuration management using Pydantic settings.
Loads environment variables and provides type-safe configuration.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type safety.
    """

    # Google OAuth Configuration (used to refresh stored tokens)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # OpenAI Configuration (optional - analyzer degrades without it)
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_VISION_MODEL: str = "gpt-4o-mini"

    # Encryption Configuration
    ENCRYPTION_KEY: str = ""

    # Application Configuration
    APP_ENV: str = "local"  # local, development, staging, production
    LOG_LEVEL: str = "INFO"
    FRONTEND_URL: str = "http://localhost:3000"

    # Database Configuration
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/unsubscriber.db"

    # Queue Configuration
    QUEUE_CONCURRENCY: int = 3
    QUEUE_POLL_INTERVAL: float = 2.0
    QUEUE_AUTOSTART: bool = True

    # Retry policy: single_attempt, exponential_backoff
    RETRY_POLICY: str = "single_attempt"
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 60.0
    RETRY_MAX_DELAY: float = 3600.0

    # Unsubscribe tiers
    HTTP_TIMEOUT: float = 15.0
    BROWSER_AUTOMATION_ENABLED: bool = True
    BROWSER_CONCURRENCY: int = 1
    BROWSER_MAX_STEPS: int = 10
    BROWSER_STEP_TIMEOUT: float = 30.0
    VERIFICATION_CONFIDENCE_THRESHOLD: float = 0.7

    # Notifications
    NOTIFY_WEBHOOK_URL: Optional[str] = None
    NOTIFY_TIMEOUT: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.APP_ENV == "production"

    def is_local(self) -> bool:
        """Check if running in local environment."""
        return self.APP_ENV == "local"


# Global settings instance
settings = Settings()
