from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Ensure environment variables override .env file
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chat_messages.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # Remote backup store (Supabase PostgREST). Backup is disabled when unset.
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    BACKUP_TABLE: str = "chat_messages_backup"

    # Backup synchronizer
    BACKUP_INTERVAL_MS: int = 240_000
    BACKUP_BATCH_SIZE: int = 500
    RESTORE_PAGE_SIZE: int = 1000
    BACKUP_TIMEOUT_SECONDS: float = 30.0
    BACKUP_PERSIST_WATERMARK: bool = True

    # Relay behaviour
    SNAPSHOT_ON_SEND: bool = True

    @property
    def backup_enabled(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_KEY)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every access.
    """
    return Settings()


# Global settings instance
settings = get_settings()
