from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """
    Chat client settings loaded from RELAY_CLIENT_* environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_CLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    SERVER_URL: str = "ws://localhost:8000/ws"

    # Where unacknowledged messages are kept between runs; empty disables it
    OFFLINE_QUEUE_PATH: str = "pending_messages.json"

    # Connection
    MAX_RECONNECT_ATTEMPTS: int = 5
    HEARTBEAT_INTERVAL_SECONDS: float = 20.0
    OPEN_TIMEOUT_SECONDS: float = 10.0

    # Delivery
    MAX_DELIVERY_ATTEMPTS: int = 3
    DELIVERY_TIMEOUT_SECONDS: float = 10.0
    OFFLINE_RETRY_SECONDS: float = 5.0
    FLUSH_STAGGER_SECONDS: float = 0.5

    # Local message list
    TIMELINE_LIMIT: int = 200


@lru_cache()
def get_client_settings() -> ClientSettings:
    """Get cached client settings instance."""
    return ClientSettings()
