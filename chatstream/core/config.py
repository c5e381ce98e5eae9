"""
Client configuration using Pydantic Settings.

Supports hierarchical environment configuration:
- .env.base: Common non-secret defaults (committed to git)
- .env.{ENVIRONMENT}: Environment-specific overrides (gitignored)
- Environment variables (CHATSTREAM_*): Highest priority
"""

import os
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

# Get environment from env var, default to development
ENV = os.getenv("ENVIRONMENT", "development")


class Settings(BaseSettings):
    """Chat stream client settings with hierarchical env file support."""

    model_config = SettingsConfigDict(
        env_prefix="CHATSTREAM_",
        env_file=[
            ".env.base",  # Common defaults (committed)
            f".env.{ENV}",  # Environment overrides (gitignored)
        ],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "test", "production"] = "development"

    # Backend endpoints
    api_base_url: str = "http://localhost:3000/api"
    login_path: str = "/"  # Where unauthenticated users are sent

    # Polling
    poll_interval_seconds: float = 2.0  # Sleep between polls without new events
    max_completed_empty_retries: int = 3  # Empty terminal polls before giving up
    request_timeout_seconds: float = 30.0  # Per-request timeout, not the interval
    resubmit_grace_seconds: float = 0.1  # Let an aborted request unwind

    # Server-busy (503) auto-retry
    server_busy_max_retries: int = 2
    server_busy_retry_delay_seconds: float = 3.0

    # Shown when a 429 payload carries no limit
    default_daily_limit: int = 5

    # Default model configuration sent with new jobs
    default_chat_service_type: Literal["ALPHA_AI", "BRAIN_CRASH"] = "ALPHA_AI"
    default_model_provider: Literal["anthropic", "openai", "google", "perplexity"] = (
        "anthropic"
    )
    default_model: str = "claude-sonnet-4-5-20250929"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached client settings."""
    return Settings()
