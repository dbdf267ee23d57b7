"""
Importer settings using Pydantic for type-safe configuration.

Loads configuration from environment variables (and a local ``.env`` file)
for the warehouse connection, the ledger feed and the retry policy.
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ledger_analytics.errors import ImporterConfigError

# Load .env file if it exists
load_dotenv()


class WarehouseSettings(BaseSettings):
    """Postgres warehouse connection."""

    model_config = SettingsConfigDict(env_prefix="WAREHOUSE_", extra="ignore")

    host: str = Field(default="warehouse")
    port: int = Field(default=5432)
    db: str = Field(default="ledger_analytics")
    user: str = Field(default="")
    password: str = Field(default="")
    pool_min: int = Field(default=1)
    # At least one per feed loop sharing the pool; exhaustion raises PoolError.
    pool_max: int = Field(default=4)

    def dsn(self) -> str:
        if not self.user:
            raise ImporterConfigError("Postgres user not set. Configure the WAREHOUSE_USER env var.")
        return f"host={self.host} port={self.port} dbname={self.db} user={self.user} password={self.password}"


class LedgerSettings(BaseSettings):
    """Ledger API and transaction feed."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    url: str = Field(default="")
    access_token: Optional[str] = Field(default=None)
    feed_alias: str = Field(default="analytics")
    feed_filter: str = Field(default="")
    # Long-poll wait per /list-transactions request.
    feed_timeout_s: float = Field(default=60.0)
    max_retries: int = Field(default=3)

    def require_url(self) -> str:
        if not self.url:
            raise ImporterConfigError("Ledger URL not set. Configure the LEDGER_URL env var.")
        return self.url


class RetrySettings(BaseSettings):
    """Backoff between failed import iterations."""

    model_config = SettingsConfigDict(env_prefix="IMPORTER_", extra="ignore")

    backoff_base_s: float = Field(default=0.5)
    backoff_max_s: float = Field(default=30.0)


class ImporterSettings(BaseSettings):
    """Main settings container aggregating all configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    warehouse: WarehouseSettings = Field(default_factory=WarehouseSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


@lru_cache()
def get_settings() -> ImporterSettings:
    """
    Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the process.

    Returns:
        ImporterSettings instance with all configuration loaded
    """
    return ImporterSettings()
