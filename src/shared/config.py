"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for the sprint report cache.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Redis (Tier-2) connection settings
- In-process cache (Tier-1) and optimizer tuning
"""
from typing import Optional, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Redis configuration settings."""

    redis_enabled: bool = Field(True, description="Use Redis as the shared Tier-2 store")
    redis_url: str = Field("redis://localhost:6379")
    redis_db: int = Field(0)
    redis_password: Optional[str] = Field(None)
    redis_pool_size: int = Field(10)
    redis_timeout: int = Field(5, description="Socket timeout in seconds")

    @field_validator("redis_db")
    @classmethod
    def validate_db(cls, v):
        if v < 0:
            raise ValueError("Redis database index must be non-negative")
        return v

    @field_validator("redis_pool_size")
    @classmethod
    def validate_pool_size(cls, v):
        if v < 1:
            raise ValueError("Pool size must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class CacheSettings(BaseSettings):
    """In-process cache and cache manager settings."""

    memory_max_size: int = Field(1000, description="Maximum number of Tier-1 keys")
    memory_ttl: int = Field(300, description="Default TTL in seconds")
    backfill_max_ttl: int = Field(300, description="TTL cap for Tier-1 backfills from Redis")

    # Capacity management
    eviction_threshold: float = Field(0.95)
    eviction_fraction: float = Field(0.1)
    batch_failure_ratio: float = Field(0.3)
    batch_eviction_fraction: float = Field(0.2)

    # Redis scanning
    scan_count: int = Field(100, description="Keys per SCAN page")
    delete_batch_size: int = Field(1000)

    # Compression of Tier-2 payloads
    compression_level: int = Field(6)

    # Background refresh
    refresh_single_flight: bool = Field(True)
    background_error_history: int = Field(100)

    @field_validator("memory_max_size", "scan_count", "delete_batch_size")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("eviction_threshold", "eviction_fraction", "batch_failure_ratio", "batch_eviction_fraction")
    @classmethod
    def validate_fraction(cls, v):
        if not 0 < v <= 1:
            raise ValueError("Fraction must be in (0, 1]")
        return v

    @field_validator("compression_level")
    @classmethod
    def validate_compression_level(cls, v):
        if not 1 <= v <= 9:
            raise ValueError("Compression level must be between 1 and 9")
        return v

    model_config = SettingsConfigDict(env_prefix="CACHE_", env_file=".env", case_sensitive=False, extra="ignore")


class OptimizerSettings(BaseSettings):
    """Access-pattern optimizer settings."""

    enabled: bool = Field(True)
    interval_seconds: int = Field(300)
    history_size: int = Field(50)
    prefetch_ttl: int = Field(1800, description="TTL in seconds for prefetched entries")

    model_config = SettingsConfigDict(env_prefix="OPTIMIZER_", env_file=".env", case_sensitive=False, extra="ignore")


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: str = Field("colored")
    log_file: Optional[str] = Field(None)
    prometheus_enabled: bool = Field(True)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class Settings(BaseSettings):
    """Main application settings."""

    # Application settings
    environment: Environment = Field(Environment.DEVELOPMENT)
    debug: bool = Field(True)
    app_name: str = Field("Sprint Report Cache")
    app_version: str = Field("1.0.0")

    # Component settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if hasattr(info, 'data') and info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="allow")


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings.

    Settings are loaded lazily on first access so tests can adjust the
    environment before anything reads it.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def get_redis_settings() -> RedisSettings:
    """Get Redis settings."""
    return get_settings().redis


def get_cache_settings() -> CacheSettings:
    """Get cache settings."""
    return get_settings().cache


# Configuration validation
def validate_configuration(settings: Optional[Settings] = None) -> List[str]:
    """
    Validate the configuration and return any errors.

    Returns:
        List of validation error messages
    """
    settings = settings or get_settings()
    errors = []

    if settings.redis.redis_enabled and not settings.redis.redis_url:
        errors.append("REDIS_URL is required when Redis is enabled")

    if settings.cache.backfill_max_ttl > settings.cache.memory_ttl * 100:
        errors.append("CACHE_BACKFILL_MAX_TTL is unreasonably large compared to CACHE_MEMORY_TTL")

    if settings.is_production():
        if settings.debug:
            errors.append("Debug mode should be disabled in production")
        if not settings.redis.redis_enabled:
            errors.append("Redis should be enabled in production so caches are shared across processes")

    return errors


def get_config_summary(settings: Optional[Settings] = None) -> dict:
    """
    Get a summary of the configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    settings = settings or get_settings()
    return {
        "environment": settings.environment,
        "debug": settings.debug,
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "redis": {
            "enabled": settings.redis.redis_enabled,
            "db": settings.redis.redis_db,
            "pool_size": settings.redis.redis_pool_size,
            "password_configured": bool(settings.redis.redis_password),
        },
        "cache": {
            "memory_max_size": settings.cache.memory_max_size,
            "memory_ttl": settings.cache.memory_ttl,
            "refresh_single_flight": settings.cache.refresh_single_flight,
        },
        "optimizer": {
            "enabled": settings.optimizer.enabled,
            "interval_seconds": settings.optimizer.interval_seconds,
        },
        "monitoring": {
            "log_level": settings.monitoring.log_level,
            "prometheus_enabled": settings.monitoring.prometheus_enabled,
        },
    }
