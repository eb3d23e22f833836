"""
Shared Store Configuration

Settings common to the producer and the consumer: where the transactional
store lives, how units of work against it are retried, and how logs are
formatted. Loaded from environment variables (and an optional .env file) with
Pydantic validation.

CONFIGURATION SOURCES (priority order):
1. Constructor arguments
2. Environment variables
3. .env file (loaded by python-dotenv)
4. Default values
"""

from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if present (local development)
load_dotenv()


class StoreSettings(BaseSettings):
    """
    Store, retry and logging settings shared by both services.

    Attributes:
        database_url: Full SQLAlchemy URL; overrides the postgres_* fields
        postgres_host: PostgreSQL host
        postgres_port: PostgreSQL port
        postgres_db: PostgreSQL database name
        postgres_user: PostgreSQL username
        postgres_password: PostgreSQL password
        db_pool_size: SQLAlchemy connection pool size
        max_retries: Re-attempts after the first try (0 = single attempt)
        retry_backoff_ms: Initial backoff between attempts
        retry_max_backoff_ms: Upper bound for exponential backoff
        log_level: Logging level
        log_format: json or text
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === DATABASE SETTINGS ===
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL (e.g. sqlite:///pipeline.db); overrides postgres_* fields",
    )

    postgres_host: str = Field(
        default="localhost",
        description="PostgreSQL host",
    )

    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL port",
    )

    postgres_db: str = Field(
        default="file_pipeline",
        description="PostgreSQL database name",
    )

    postgres_user: str = Field(
        default="postgres",
        description="PostgreSQL username",
    )

    postgres_password: str = Field(
        default="postgres",
        description="PostgreSQL password",
    )

    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="SQLAlchemy connection pool size",
    )

    # === RETRY SETTINGS ===
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Re-attempts of a unit of work after a transient store failure",
    )

    retry_backoff_ms: int = Field(
        default=1000,
        ge=0,
        le=10000,
        description="Initial retry backoff in milliseconds (doubles per attempt)",
    )

    retry_max_backoff_ms: int = Field(
        default=30000,
        ge=0,
        description="Maximum retry backoff in milliseconds",
    )

    # === LOGGING ===
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json or text)",
    )

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )
