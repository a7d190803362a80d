"""
Configuration and settings for the club site backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

IN_MEMORY_DATABASE_URL = "sqlite+pysqlite:///:memory:"
DEFAULT_ADMIN_PASSWORD = "admin123"
DEFAULT_JWT_SECRET = "fallback_secret_key"


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (any SQLAlchemy URL; MySQL, Postgres and SQLite are supported)
    database_url: str = Field(default="sqlite+pysqlite:///club_site.db")

    # Directory that legacy image_path/file_path values are relative to
    legacy_upload_root: str = Field(default="public")

    # Auth
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    jwt_algorithm: str = Field(default="HS256")
    token_ttl_hours: int = Field(default=24, ge=1)
    admin_username: str = Field(default="admin")
    admin_password: str = Field(default=DEFAULT_ADMIN_PASSWORD)

    # Uploads
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    # Static marketing pages, mounted at "/" when set
    static_dir: Optional[str] = Field(default=None)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    log_level: str = Field(default="INFO")

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    def resolved_database_url(self) -> str:
        if self.use_in_memory_backends:
            return IN_MEMORY_DATABASE_URL
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
