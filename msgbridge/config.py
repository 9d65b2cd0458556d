from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    # Logging Configuration - required
    LOG_LEVEL: str

    # Credential Vault secret - required
    ENCRYPTION_KEY: str

    # Used to compose human-readable webhook URLs
    WEBHOOK_BASE_URL: str = "http://localhost:8000"

    # Fallback token for the WhatsApp Business verification handshake
    WHATSAPP_VERIFY_TOKEN: str = ""

    # Queue processor
    QUEUE_ENABLED: bool = True
    QUEUE_BATCH_SIZE: int = 50
    QUEUE_POLL_INTERVAL_SECONDS: float = 120.0
    QUEUE_MAX_RETRIES: int = 3

    # Outbound provider calls
    GATEWAY_TIMEOUT_SECONDS: float = 15.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
