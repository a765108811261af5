"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Directory API
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_ACCESS_TOKEN: Optional[str] = None

    # Retrying client
    API_TIMEOUT: float = 30.0
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 60.0

    # Database
    DATABASE_URL: Optional[str] = None
    SQLITE_PATH: str = "tenantlens.db"
    SQL_DEBUG: bool = False

    # Persistent cache
    CACHE_REFRESH_DELAY: float = 0.1
    CACHE_SWEEP_INTERVAL: float = 300.0
    CACHE_REFRESH_QUEUE_SIZE: int = 100

    # Findings
    FINDINGS_CACHE_TTL: float = 30.0
    ADMIN_CACHE_TTL: float = 60.0
    SCAN_INTERVAL: float = 0.0  # 0 disables the scan scheduler

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
