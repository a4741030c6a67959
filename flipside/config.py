from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Discogs
    DISCOGS_BASE_URL: str = "https://api.discogs.com"
    DISCOGS_USER_AGENT: str = "FlipSideApp/1.0"
    DISCOGS_CONSUMER_KEY: Optional[str] = None
    DISCOGS_CONSUMER_SECRET: Optional[str] = None
    DISCOGS_OAUTH_TOKEN: Optional[str] = None
    DISCOGS_OAUTH_TOKEN_SECRET: Optional[str] = None
    DISCOGS_USERNAME: Optional[str] = None
    DISCOGS_CREDENTIALS_PATH: Optional[str] = None
    DISCOGS_PER_PAGE: int = 100

    # Rate limiting (one bucket for the whole Discogs API)
    RATE_LIMIT_REQUESTS_PER_MINUTE: int = 60
    RATE_LIMIT_BURST_CAPACITY: int = 4
    RATE_LIMIT_MAX_RETRIES: int = 3
    RATE_LIMIT_ACQUIRE_JITTER_SECONDS: float = 0.05
    RATE_LIMIT_BACKOFF_JITTER_SECONDS: float = 0.25

    # Cache TTLs per resource kind
    CACHE_TTL_SEARCH_SECONDS: int = 600
    CACHE_TTL_RELEASE_SECONDS: int = 86400  # 24h
    CACHE_TTL_PRICES_SECONDS: int = 21600  # 6h
    CACHE_TTL_STATUS_SECONDS: int = 120

    # Library
    LIBRARY_PATH: str = "/data/library.json"
    PERSIST_ENABLED: bool = True
    LIBRARY_STALE_SECONDS: int = 900  # 15m
    SYNC_INTERVAL_SECONDS: int = 300

    # System
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: int = 30
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
