"""
Application settings using Pydantic.

Provides environment-based configuration loading with AFU9_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "postgresql+psycopg://localhost/afu9"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False
    log_level: str = "INFO"

    # Lawbook
    lawbook_id: str = "AFU9-LAWBOOK"
    lawbook_cache_ttl_seconds: float = 30.0

    # GitHub
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None

    # HTTP client settings
    http_timeout: int = 30
    http_max_retries: int = 3

    # Playbook execution
    playbook_retry_backoff_seconds: float = 1.0
    playbook_retry_backoff_max_seconds: float = 30.0
    http_check_timeout_seconds: float = 10.0
    http_check_body_limit: int = 1000
    wait_observe_max_seconds: int = 300
    wait_observe_interval_seconds: int = 10

    # Loop
    loop_lock_ttl_seconds: int = 300

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "AFU9_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
