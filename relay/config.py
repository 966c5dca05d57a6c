from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Relay settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chat_history.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # History log
    HISTORY_LIMIT: int = 1000
    HISTORY_SEED_LIMIT: int = 100
    MAX_TEXT_LENGTH: int = 500
    DEDUP_WINDOW_MS: int = 5000
    CATCHUP_PAGE_SIZE: int = 50

    # Presence
    # How long a dropped session is held for reconnection before it is announced as left
    GRACE_WINDOW_SECONDS: float = 30.0
    AWAY_THRESHOLD_SECONDS: float = 30.0
    SWEEP_INTERVAL_SECONDS: float = 30.0

    # clear_chat is only honored while at most this many sessions are present
    CLEAR_CHAT_MAX_OCCUPANCY: int = 2

    # Frames queued for a slow peer before its connection is closed
    OUTBOX_LIMIT: int = 256


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every access.
    """
    return Settings()


# Global settings instance
settings = get_settings()
