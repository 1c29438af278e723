"""
Configuration and environment handling for DealScout.
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models.extraction import FieldSpec
from .models.field_specs import default_field_specs

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class MySQLConfig(BaseModel):
    """MySQL database configuration."""
    host: str = Field(default_factory=lambda: os.getenv("MYSQL_HOST", "localhost"))
    port: int = Field(default_factory=lambda: int(os.getenv("MYSQL_PORT", "3306")))
    user: str = Field(default_factory=lambda: os.getenv("MYSQL_USER", "root"))
    password: str = Field(default_factory=lambda: os.getenv("MYSQL_PASSWORD", ""))
    database: str = Field(default_factory=lambda: os.getenv("MYSQL_DATABASE", "dealscout"))


class ExtractionConfig(BaseModel):
    """Extraction pass tuning."""
    batch_size: int = Field(
        default_factory=lambda: _env_int("DEALSCOUT_BATCH_SIZE", 250),
        ge=1,
        description="Listings per store upsert"
    )
    concurrency: int = Field(
        default_factory=lambda: _env_int("DEALSCOUT_CONCURRENCY", 4),
        ge=1,
        description="Units processed in parallel (1 = sequential, in order)"
    )
    retry_budget: int = Field(
        default_factory=lambda: _env_int("DEALSCOUT_RETRY_BUDGET", 3),
        ge=1,
        description="Attempts per unit, including the first"
    )
    backoff_base_ms: int = Field(default_factory=lambda: _env_int("DEALSCOUT_BACKOFF_BASE_MS", 1000), ge=0)
    backoff_max_ms: int = Field(default_factory=lambda: _env_int("DEALSCOUT_BACKOFF_MAX_MS", 30000), ge=0)
    persist_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("DEALSCOUT_PERSIST_TIMEOUT", 30.0),
        gt=0,
    )
    multiple_tolerance: float = Field(default=0.5, ge=0, description="Allowed gap between stated and derived multiples")
    seed_known_ids: bool = Field(default=True, description="Seed dedup with ids already in the store")
    field_specs: list[FieldSpec] = Field(default_factory=default_field_specs)


class SourceConfig(BaseModel):
    """Listings API configuration."""
    api_url: str = Field(default_factory=lambda: os.getenv("DEALSCOUT_API_URL", "https://flippa.com/v3/listings"))
    page_size: int = Field(default=100, ge=1, le=500)
    timeout_seconds: float = Field(default_factory=lambda: _env_float("DEALSCOUT_FETCH_TIMEOUT", 30.0), gt=0)


class Config(BaseModel):
    """Main configuration."""
    mysql: MySQLConfig = Field(default_factory=MySQLConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)


# Singleton config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the singleton config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
