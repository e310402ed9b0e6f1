"""Service configuration using pydantic-settings."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Persistence layer configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # R2 Configuration
    PO_R2_BUCKET_PREFIX: str = ""
    PO_R2_ENDPOINT_URL: str = ""
    PO_R2_ACCESS_KEY_ID: str = ""
    PO_R2_SECRET_ACCESS_KEY: str = ""
    PO_R2_REGION: str = "auto"

    # Unauthenticated base URL used as the last-resort download path,
    # e.g. "https://pub-xxxx.r2.dev"
    PO_PUBLIC_BASE_URL: str = ""

    # Remote store retry budget
    PO_UPLOAD_TIMEOUT_SECONDS: float = 25.0
    PO_DOWNLOAD_TIMEOUT_SECONDS: float = 30.0
    PO_UPLOAD_MAX_ATTEMPTS: int = 5
    PO_DOWNLOAD_MAX_ATTEMPTS: int = 7
    PO_LIST_LIMIT: int = 100

    # Local cache
    PO_CACHE_DB_PATH: Path = Path.home() / ".cache" / "po-relay" / "cache.db"
    PO_CACHE_QUOTA_BYTES: int = 50 * 1024 * 1024
    PO_CACHE_ENTRY_MAX_BYTES: int = 10 * 1024 * 1024
    PO_CACHE_TTL_DAYS: int = 7
    PO_CACHE_VERSION: str = "1"

    # File mapping records: "remote" (mappings bucket) or "sqlite"
    PO_MAPPING_BACKEND: str = "remote"
    PO_MAPPING_DB_PATH: Path = Path.home() / ".cache" / "po-relay" / "mappings.db"

    # Logging
    PO_LOG_DIR: Path = Path.home() / ".cache" / "po-relay" / "logs"


settings = Settings()
