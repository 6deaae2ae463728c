"""
Configuration management using Pydantic Settings
"""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_prefix="BITESPEED_",
        env_file=".env",
        extra="ignore",
    )

    # Application
    app_name: str = "Bitespeed Contact Reconciliation API"
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, ge=1, le=65535, description="API port")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="'json' or 'console'")

    # Database
    database_path: str = Field(default="contacts.db", description="SQLite database file")
    db_timeout: float = Field(default=5.0, gt=0, description="Seconds to wait on a locked database")

    # Retries for lock conflicts
    max_attempts: int = Field(default=3, ge=1, description="Attempts per identify call")
    base_backoff: float = Field(default=0.05, ge=0)
    max_backoff: float = Field(default=1.0, ge=0)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def check_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v


@lru_cache()
def get_settings() -> Settings:
    return Settings()
