"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Literal
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AppMode = Literal["development", "testing", "production"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    GOAPP_PORT: int = Field(default=8001, ge=1, le=65535)
    GOAPP_MODE: AppMode = Field(default="development")

    # Database - PostgreSQL
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432, ge=1, le=65535)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(min_length=1)
    POSTGRES_DB: str = Field(default="gotodo")
    DB_CONNECT_TIMEOUT: int = Field(default=30, gt=0)
    DB_OPERATION_TIMEOUT: float = Field(default=10.0, gt=0)

    # Seeding flags (consumed by external tooling)
    SEED_DEVELOPMENT: bool = Field(default=False)
    SEED_PRODUCTION: bool = Field(default=False)

    # CORS
    FRONTEND_ORIGINS: str = Field(default="http://localhost:3000")

    # Redis
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379, ge=1, le=65535)
    REDIS_DB: int = Field(default=0, ge=0)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_SOCKET_TIMEOUT: float = Field(default=3.0, gt=0)
    REDIS_CONNECT_TIMEOUT: float = Field(default=5.0, gt=0)
    REDIS_POOL_SIZE: int = Field(default=10, gt=0)

    # Caching
    CACHE_BACKEND: Literal["redis", "memory"] = Field(default="redis")
    CACHE_TTL_SECONDS: int = Field(default=300, ge=0)
    CACHE_OPERATION_TIMEOUT: float = Field(default=1.0, gt=0)
    HTTP_CACHE_MAX_AGE: int = Field(default=60, ge=0)

    # Rate limiting (fixed window, per client IP)
    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60, gt=0)
    RATE_LIMIT_READ: int = Field(default=100, gt=0)
    RATE_LIMIT_WRITE: int = Field(default=50, gt=0)
    RATE_LIMIT_PREFETCH: int = Field(default=200, gt=0)
    RATE_LIMIT_FAIL_OPEN: bool = Field(default=False)

    # Error log sink
    ERROR_LOGGER: Literal["redis", "memory", "nonblocking"] = Field(default="nonblocking")

    @field_validator("GOAPP_MODE", "CACHE_BACKEND", "ERROR_LOGGER", mode="before")
    @classmethod
    def lowercase_choice(cls, v: object) -> object:
        """Accept choices in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def frontend_origins_list(self) -> List[str]:
        """Parse FRONTEND_ORIGINS into a list."""
        return [
            origin.strip()
            for origin in self.FRONTEND_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def database_url_async(self) -> str:
        """SQLAlchemy URL for the asyncpg driver."""
        return (
            f"postgresql+asyncpg://{quote_plus(self.POSTGRES_USER)}:"
            f"{quote_plus(self.POSTGRES_PASSWORD)}@{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        auth = f":{quote_plus(self.REDIS_PASSWORD)}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.GOAPP_MODE == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.GOAPP_MODE == "development"

    @property
    def is_testing(self) -> bool:
        return self.GOAPP_MODE == "testing"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
