from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """learnsync settings.

    All values are loaded from environment variables.
    A .env file in the working directory is also supported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Local storage ---
    LOCAL_DB_URL: str = "sqlite+aiosqlite:///./learnsync.db"

    # --- Remote web service ---
    WS_TIMEOUT: float = 30.0
    WS_VERIFY_TLS: bool = True

    # --- Sync ---
    SYNC_MAX_ATTEMPTS: int = 0  # 0 keeps failing operations queued forever
    SYNC_INTERVAL: int = 300  # seconds between automatic syncs of one site
    AUTO_SYNC_ENABLED: bool = True

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Ensure a plain sqlite URL uses the aiosqlite driver."""
        url = self.LOCAL_DB_URL
        if url.startswith("sqlite://"):
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton."""
    return Settings()
