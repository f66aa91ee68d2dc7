"""
Configuration management using Pydantic Settings.
Loads environment variables and provides the cache profile limits.
"""

import logging
from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_MIB: int = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Configuration
    fmp_api_key: str = Field(
        ...,
        description="Financial Modeling Prep API key (required)",
    )
    fmp_base_url: str = Field(
        default="https://financialmodelingprep.com/stable",
        description="Base URL for the FMP stable API",
    )

    # General-purpose cache (seconds / entries / bytes)
    general_cache_ttl: int = Field(
        default=300,
        ge=1,
        description="Default TTL for the general cache in seconds",
    )
    general_cache_max_entries: int = Field(default=2000, ge=1)
    general_cache_max_bytes: int = Field(default=100 * _MIB, ge=1)

    # Short-TTL stock/crypto quote cache
    stock_cache_ttl: int = Field(
        default=120,
        ge=1,
        description="Default TTL for the stock quote cache in seconds",
    )
    stock_cache_max_entries: int = Field(default=1000, ge=1)
    stock_cache_max_bytes: int = Field(default=50 * _MIB, ge=1)

    # Longer-TTL market overview cache
    market_cache_ttl: int = Field(
        default=600,
        ge=1,
        description="Default TTL for the market overview cache in seconds",
    )
    market_cache_max_entries: int = Field(default=500, ge=1)
    market_cache_max_bytes: int = Field(default=25 * _MIB, ge=1)

    # Per-request TTL overrides (seconds)
    crypto_quote_ttl: int = Field(
        default=300,
        ge=1,
        description="TTL for crypto quotes stored in the stock cache",
    )
    prewarm_ttl: int = Field(
        default=300,
        ge=1,
        description="TTL used for entries loaded by the startup pre-warm",
    )

    # Background sweep
    cache_sweep_interval: int = Field(
        default=60,
        ge=1,
        description="Seconds between sweeps of expired cache entries",
    )

    # Pre-warm
    prewarm_on_startup: bool = Field(
        default=False,
        description="Load popular symbols into the stock cache on startup",
    )
    prewarm_symbols: List[str] = Field(
        default_factory=lambda: ["AAPL", "GOOGL", "MSFT", "TSLA", "AMZN"],
        description="Symbols loaded by the pre-warm",
    )

    # Upstream batching
    batch_size: int = Field(
        default=2,
        ge=1,
        description="Symbols fetched concurrently per batch in multi-quote reads",
    )
    batch_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Pause between multi-quote batches in seconds",
    )

    # Application Constants
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("fmp_api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """Ensure API key is not empty."""
        if not v or v.strip() == "":
            raise ValueError("FMP_API_KEY must not be empty")
        return v.strip()

    @field_validator("fmp_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL is properly formatted."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("FMP_BASE_URL must start with http:// or https://")
        return v

    @field_validator("prewarm_symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        """Upper-case symbols and drop blanks."""
        return [s.strip().upper() for s in v if s and s.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton

    Raises:
        ValidationError: If required environment variables are missing or invalid
    """
    return Settings()
