"""Configuration management using Pydantic settings."""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, PostgresDsn, computed_field
import os


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Playbook Engine"
    VERSION: str = "1.0.0"
    BACKEND_CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000"])

    # Database
    POSTGRES_SERVER: str = Field(default="localhost")
    POSTGRES_USER: str = Field(default="playbooks")
    POSTGRES_PASSWORD: str = Field(default="local_dev_password")
    POSTGRES_DB: str = Field(default="playbooks")
    POSTGRES_PORT: int = Field(default=5432)

    @computed_field
    @property
    def DATABASE_URL(self) -> PostgresDsn | str:
        """Construct database URL from components."""
        # SQLALCHEMY_DATABASE_URI bypasses Pydantic validation (sqlite, unix sockets)
        sqlalchemy_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        if sqlalchemy_uri:
            return sqlalchemy_uri

        return PostgresDsn.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Commerce
    PLATFORM_FEE_RATE: float = Field(
        default=0.15,
        ge=0.0,
        le=1.0,
        description="Share of each paid purchase retained by the platform",
    )

    PAYMENT_WEBHOOK_SECRET: str = Field(
        default="",
        description="Shared secret the payment collaborator signs callbacks with; callbacks are refused while unset",
    )

    # Deployment
    CLEAN_SLUGS: bool = Field(
        default=True,
        description="Resolve slug collisions with -2, -3 ... instead of an installation suffix",
    )
    SMOKE_TEST_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    SMOKE_TEST_MAX_CASES: int = Field(default=25, ge=0)

    # Lifecycle policy flags
    ALLOW_ARCHIVE_WITH_ACTIVE_INSTALLATIONS: bool = Field(default=True)
    UNINSTALL_ON_REFUND: bool = Field(default=False)

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    ENVIRONMENT: str = Field(default="development")

    # Performance
    MAX_CONNECTIONS_COUNT: int = Field(default=10)
    SQL_ECHO: Optional[bool] = Field(default=False)


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()


_settings = None


def get_cached_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = get_settings()
    return _settings
