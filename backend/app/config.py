"""Application configuration."""

import os
from functools import lru_cache
from typing import Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Flow Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Persistence Settings
    PERSISTENCE_BACKEND: str = "memory"  # memory or database
    DATABASE_URL: str = "sqlite+aiosqlite:///:memory:"
    SQLALCHEMY_ECHO: bool = False

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Execution Settings
    CLUSTER_MAX_CONCURRENCY: int = 10
    BATCH_MAX_CONCURRENCY: int = 0  # 0 = unbounded
    MAX_LOGS: int = 1000
    MAX_NODE_RESULTS: int = 1000
    MAX_DATA_SIZE: int = 10 * 1024 * 1024  # bytes
    # Process env vars with these prefixes are forwarded into every run
    ENV_PASSTHROUGH_PREFIXES: str = "OPENAI_"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def passthrough_prefixes(self) -> list[str]:
        return [p.strip() for p in self.ENV_PASSTHROUGH_PREFIXES.split(",") if p.strip()]

    @property
    def memory_limits(self) -> Dict[str, int]:
        return {
            "max_logs": self.MAX_LOGS,
            "max_node_results": self.MAX_NODE_RESULTS,
            "max_data_size": self.MAX_DATA_SIZE,
        }

    def passthrough_env(self) -> Dict[str, str]:
        """Process environment variables matching the passthrough prefixes."""
        prefixes = tuple(self.passthrough_prefixes)
        if not prefixes:
            return {}
        return {key: value for key, value in os.environ.items() if key.startswith(prefixes)}

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
