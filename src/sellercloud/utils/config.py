"""
Configuration management for SellerCloud.

Provides centralized configuration loading and validation using Pydantic models.
Settings come from environment variables (``SELLERCLOUD_`` prefix) and an
optional ``.env`` file, and are grouped into cache, gateway, currency and
application sub-configurations.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sellercloud.utils.exceptions import ConfigurationError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)


class CacheConfig(BaseModel):
    """Snapshot cache and persistence configuration."""

    products_ttl: float = Field(default=300.0, description="Products freshness window in seconds")
    orders_ttl: float = Field(default=120.0, description="Orders freshness window in seconds")
    auto_refresh: bool = Field(default=True, description="Refresh stale entries in the background on read")
    storage_backend: str = Field(default="file", description="memory | file | redis")
    snapshot_dir: str = Field(default="./.sellercloud", description="Directory for file storage")
    redis_url: Optional[str] = Field(default=None, description="Redis URL for redis storage")

    @field_validator('products_ttl', 'orders_ttl')
    @classmethod
    def validate_ttl(cls, v):
        if v <= 0:
            raise ValueError("TTL must be positive")
        return v

    @field_validator('storage_backend')
    @classmethod
    def validate_storage_backend(cls, v):
        valid_backends = ["memory", "file", "redis"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Storage backend must be one of: {valid_backends}")
        return v.lower()


class GatewayConfig(BaseModel):
    """Fetch gateway configuration."""

    request_timeout: float = Field(default=30.0, description="Upstream request timeout in seconds")
    max_pages: int = Field(default=100, description="Page cap for fetch_all")
    page_size: int = Field(default=50, description="Default page size")
    max_retries: int = Field(default=2, description="Retries for transient upstream errors")
    retry_base_delay: float = Field(default=1.0, description="Initial backoff delay in seconds")
    retry_max_delay: float = Field(default=10.0, description="Maximum backoff delay in seconds")
    max_concurrent_requests: int = Field(default=3, description="Concurrent upstream fetches")

    @field_validator('request_timeout', 'retry_base_delay', 'retry_max_delay')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('max_pages', 'page_size', 'max_concurrent_requests')
    @classmethod
    def validate_at_least_one(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v):
        if v < 0:
            raise ValueError("Retries cannot be negative")
        return v


class CurrencyConfig(BaseModel):
    """Exchange-rate configuration."""

    local_currency: str = Field(default="UZS", description="Currency analytics are reported in")
    rub_to_uzs: float = Field(default=140.0, description="Fixed RUB to UZS approximation")
    rate_version: str = Field(default="static-1", description="Identifier of the rate set")

    @field_validator('rub_to_uzs')
    @classmethod
    def validate_rate(cls, v):
        if v <= 0:
            raise ValueError("Exchange rate must be positive")
        return v


class ApplicationConfig(BaseModel):
    """General application configuration."""

    log_level: str = Field(default="INFO", description="Logging level")
    debug_mode: bool = Field(default=False, description="Debug mode flag")
    default_user: str = Field(default="default", description="User id the CLI operates on")
    low_stock_threshold: int = Field(default=5, description="Stock below this is 'low'")
    encryption_master_key: Optional[str] = Field(default=None, description="Fernet key for credentials")
    encryption_secondary_key: Optional[str] = Field(default=None, description="Previous key during rotation")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class SellerCloudConfig(BaseSettings):
    """Main application configuration combining all sub-configurations."""

    model_config = SettingsConfigDict(
        env_prefix="SELLERCLOUD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    products_ttl: float = 300.0
    orders_ttl: float = 120.0
    auto_refresh: bool = True
    storage_backend: str = "file"
    snapshot_dir: str = "./.sellercloud"
    redis_url: Optional[str] = None

    request_timeout: float = 30.0
    max_pages: int = 100
    page_size: int = 50
    max_retries: int = 2
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    max_concurrent_requests: int = 3

    local_currency: str = "UZS"
    rub_to_uzs: float = 140.0
    rate_version: str = "static-1"

    log_level: str = "INFO"
    debug_mode: bool = False
    default_user: str = "default"
    low_stock_threshold: int = 5
    encryption_master_key: Optional[str] = None
    encryption_secondary_key: Optional[str] = None

    @property
    def cache(self) -> CacheConfig:
        """Get cache configuration."""
        return CacheConfig(
            products_ttl=self.products_ttl,
            orders_ttl=self.orders_ttl,
            auto_refresh=self.auto_refresh,
            storage_backend=self.storage_backend,
            snapshot_dir=self.snapshot_dir,
            redis_url=self.redis_url
        )

    @property
    def gateway(self) -> GatewayConfig:
        """Get fetch gateway configuration."""
        return GatewayConfig(
            request_timeout=self.request_timeout,
            max_pages=self.max_pages,
            page_size=self.page_size,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
            max_concurrent_requests=self.max_concurrent_requests
        )

    @property
    def currency(self) -> CurrencyConfig:
        """Get currency configuration."""
        return CurrencyConfig(
            local_currency=self.local_currency,
            rub_to_uzs=self.rub_to_uzs,
            rate_version=self.rate_version
        )

    @property
    def app(self) -> ApplicationConfig:
        """Get application configuration."""
        return ApplicationConfig(
            log_level=self.log_level,
            debug_mode=self.debug_mode,
            default_user=self.default_user,
            low_stock_threshold=self.low_stock_threshold,
            encryption_master_key=self.encryption_master_key,
            encryption_secondary_key=self.encryption_secondary_key
        )


# Global configuration instance
_config: Optional[SellerCloudConfig] = None


def get_config() -> SellerCloudConfig:
    """
    Get the global configuration instance.

    Returns:
        SellerCloudConfig: Validated configuration instance.

    Raises:
        ConfigurationError: If configuration validation fails.
    """
    global _config

    if _config is None:
        try:
            config = SellerCloudConfig()
            # Sub-configs carry the validators
            for section in ("cache", "gateway", "currency", "app"):
                getattr(config, section)
            _config = config
        except ValueError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")

    return _config


def reload_config() -> SellerCloudConfig:
    """
    Reload configuration from environment variables.

    Returns:
        SellerCloudConfig: New validated configuration instance.
    """
    global _config
    _config = None
    return get_config()


def validate_configuration() -> Dict[str, Any]:
    """
    Validate current configuration and return status information.

    Returns:
        Dict containing validation results and configuration summary.
    """
    try:
        config = get_config()

        return {
            "valid": True,
            "timestamp": datetime.now().isoformat(),
            "summary": {
                "cache": {
                    "products_ttl": config.cache.products_ttl,
                    "orders_ttl": config.cache.orders_ttl,
                    "auto_refresh": config.cache.auto_refresh,
                    "storage_backend": config.cache.storage_backend,
                },
                "gateway": {
                    "request_timeout": config.gateway.request_timeout,
                    "max_pages": config.gateway.max_pages,
                    "max_retries": config.gateway.max_retries,
                    "max_concurrent_requests": config.gateway.max_concurrent_requests,
                },
                "currency": {
                    "local_currency": config.currency.local_currency,
                    "rub_to_uzs": config.currency.rub_to_uzs,
                    "rate_version": config.currency.rate_version,
                },
                "application": {
                    "log_level": config.app.log_level,
                    "debug_mode": config.app.debug_mode,
                    "default_user": config.app.default_user,
                    "has_encryption_key": bool(config.app.encryption_master_key),
                },
            }
        }

    except ConfigurationError as e:
        return {
            "valid": False,
            "error": str(e),
            "timestamp": datetime.now().isoformat()
        }
