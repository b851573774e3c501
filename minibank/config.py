"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class MinibankConfig(BaseSettings):
    """Minibank core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MINIBANK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///minibank.db"  # memory://, sqlite:///path or postgresql://...
    database_echo: bool = False  # Set to True for SQL logging

    # Concurrency configuration
    lock_timeout_seconds: float = 10.0
    max_retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Identity used when the caller supplies no acting user
    system_user: str = "SYSTEM"

    # Business rules configuration
    default_currency: str = "IDR"
    sequence_padding: int = 7
    corporate_minimum_multiplier: str = "5.0"
    enforce_dual_control: bool = True

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = MinibankConfig()


def get_config() -> MinibankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MinibankConfig:
    """Reload configuration from environment"""
    global config
    config = MinibankConfig()
    return config


def resolve_acting_user(acting_user: Optional[str]) -> str:
    """Return the acting user, falling back to the configured system identity"""
    if acting_user and acting_user.strip():
        return acting_user.strip()
    return get_config().system_user
