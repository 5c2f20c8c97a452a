"""
Runtime configuration helpers for the media backend.

Loads DATABASE_URL and the media tunables from the environment, falling back to
the .env file located in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    # Required; set in .env or the environment
    database_url: str = Field(..., alias="DATABASE_URL")

    app_name: str = Field(default="Media Backend", alias="APP_NAME")
    api_version: str = Field(default="0.1.0", alias="API_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Key-value metadata/index store and cache
    kv_backend: str = Field(default="memory", alias="KV_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    cache_default_ttl: int = Field(default=300, alias="CACHE_DEFAULT_TTL")
    metadata_cache_ttl: int = Field(default=3600, alias="METADATA_CACHE_TTL")
    metadata_kv_ttl: int | None = Field(default=None, alias="METADATA_KV_TTL")

    # Uploads and downloads
    upload_max_file_size: int = Field(default=10 * 1024 * 1024, alias="UPLOAD_MAX_FILE_SIZE")
    allowed_mime_types: list[str] = Field(
        default=["image/jpeg", "image/png", "image/webp", "image/heic", "image/heif"],
        alias="ALLOWED_MIME_TYPES",
    )
    presigned_upload_expiry: int = Field(default=3600, alias="PRESIGNED_UPLOAD_EXPIRY")
    download_url_expiry: int = Field(default=1800, alias="DOWNLOAD_URL_EXPIRY")
    max_download_url_expiry: int = Field(default=86400, alias="MAX_DOWNLOAD_URL_EXPIRY")
    max_batch_uploads: int = Field(default=10, alias="MAX_BATCH_UPLOADS")

    # Rate limiting
    upload_rate_limit: int = Field(default=10, alias="UPLOAD_RATE_LIMIT")
    delete_rate_limit: int = Field(default=20, alias="DELETE_RATE_LIMIT")
    rate_limit_window_seconds: float = Field(default=60.0, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_sweep_interval_seconds: float = Field(default=300.0, alias="RATE_LIMIT_SWEEP_INTERVAL_SECONDS")

    # Transformation URLs
    image_base_url: str = Field(default="/images", alias="IMAGE_BASE_URL")
    sign_image_urls: bool = Field(default=False, alias="SIGN_IMAGE_URLS")
    image_url_secret: str | None = Field(default=None, alias="IMAGE_URL_SECRET")
    image_url_ttl: int = Field(default=3600, alias="IMAGE_URL_TTL")

    # Cascade deletion
    deletion_batch_size: int = Field(default=5, alias="DELETION_BATCH_SIZE")
    deletion_batch_delay_seconds: float = Field(default=0.1, alias="DELETION_BATCH_DELAY_SECONDS")
    deletion_variant_warning_threshold: int = Field(default=10, alias="DELETION_VARIANT_WARNING_THRESHOLD")

    # Search
    search_max_scan: int = Field(default=1000, alias="SEARCH_MAX_SCAN")
    search_default_limit: int = Field(default=20, alias="SEARCH_DEFAULT_LIMIT")
    search_cache_ttl: int = Field(default=300, alias="SEARCH_CACHE_TTL")

    # Edge cache
    cdn_public_base_url: str | None = Field(default=None, alias="CDN_PUBLIC_BASE_URL")
    cdn_purge_url: str | None = Field(default=None, alias="CDN_PURGE_URL")
    cdn_purge_token: str | None = Field(default=None, alias="CDN_PURGE_TOKEN")
    cdn_purge_timeout: float = Field(default=10.0, alias="CDN_PURGE_TIMEOUT")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.kv_backend.strip().lower() not in {"memory", "redis"}:
            raise ValueError("KV_BACKEND must be one of: memory, redis.")
        if self.sign_image_urls and not (self.image_url_secret or "").strip():
            raise ValueError("IMAGE_URL_SECRET is required when SIGN_IMAGE_URLS=true.")
        if self.deletion_batch_size <= 0:
            raise ValueError("DELETION_BATCH_SIZE must be positive.")
        if self.rate_limit_window_seconds <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be positive.")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
