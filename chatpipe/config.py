from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.
    Only this module reads the environment; every component receives
    the values it needs as explicit constructor arguments.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Ensure environment variables override .env file
        env_ignore_empty=True,
    )

    # Storage
    DATABASE_URL: str = "sqlite:///./chatpipe.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Chunking of oversized text payloads
    CHUNK_THRESHOLD: int = 1000
    CHUNK_SIZE: int = 800
    MAX_CONTENT_LENGTH: int = 100_000

    # Editing
    EDIT_WINDOW_SECONDS: int = 300

    # Offline send queue
    MAX_SEND_RETRIES: int = 3

    # Conversation reads
    CONVERSATION_LIMIT: int = 100

    # Content transform: identity | aes | rsa
    CODEC: str = "identity"
    CODEC_SECRET: str = ""
    CODEC_PRIVATE_KEY_PEM: str = ""
    STORE_SELF_COPY: bool = False

    # Per-sender send limit
    RATE_LIMIT_MESSAGES: int = 30
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0

    # Scheduled conversation refresh
    POLL_INTERVAL_SECONDS: float = 3.0
    POLL_JITTER_SECONDS: float = 0.5


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
